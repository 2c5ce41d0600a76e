"""Script step: runs Python code in a child interpreter.

The child reads its inputs (one JSON line) and then the code from stdin, so
nothing touches the filesystem. Inputs become globals of the script, and
``json`` and ``sys`` are pre-imported. The last stdout line is parsed as
JSON into ``result`` when it can be. A non-zero exit code fails the step;
cancellation (step timeout, run cancel) kills the child.
"""

import asyncio
import json
import sys
from typing import Any, Dict, Optional

import structlog

from core.constants import StepType
from steps.base_step import BaseStepHandler, StepOutcome
from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

BOOTSTRAP = (
    "import json, sys\n"
    "_ns = {'__name__': '__main__', 'json': json, 'sys': sys}\n"
    "_ns.update(json.loads(sys.stdin.readline() or '{}'))\n"
    "exec(compile(sys.stdin.read(), '<workflow-script>', 'exec'), _ns)\n"
)


def _last_json_line(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text.splitlines()[-1])
    except json.JSONDecodeError:
        return text


class RunScriptStep(BaseStepHandler):
    """Config: ``code`` (required) and ``inputs`` (dict of script globals)."""

    step_type = StepType.RUN_SCRIPT
    display_name = "Run Script"
    description = "Execute Python code in a separate process"
    required_fields = ("code",)

    def __init__(self, python_executable: Optional[str] = None):
        self._python = python_executable or sys.executable

    def validate_config(self, config: Dict[str, Any]) -> bool:
        return super().validate_config(config) and isinstance(config.get("inputs", {}), dict)

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepOutcome:
        code = config.get("code")
        if not code:
            return StepOutcome.fail("Missing required config: code")

        stdin = json.dumps(config.get("inputs") or {}, default=str) + "\n" + code
        process = await asyncio.create_subprocess_exec(
            self._python, "-c", BOOTSTRAP,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            raw_out, raw_err = await process.communicate(stdin.encode("utf-8"))
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                logger.info("Script killed on cancellation", execution_id=context.execution_id, pid=process.pid)
            raise

        stdout = raw_out.decode("utf-8", errors="replace").strip()
        stderr = raw_err.decode("utf-8", errors="replace").strip()
        output = {
            "return_code": process.returncode,
            "stdout": stdout,
            "stderr": stderr,
            "result": _last_json_line(stdout),
        }
        if process.returncode != 0:
            return StepOutcome.fail(stderr or f"Script exited with code {process.returncode}", output=output)
        return StepOutcome.ok(output)

    @classmethod
    def describe_config(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["code"],
            "properties": {
                "code": {"type": "string", "description": "Python source code"},
                "inputs": {"type": "object", "description": "Globals made available to the script"},
            },
        }
