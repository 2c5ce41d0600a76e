"""
Step Handler Registry: maps each step type to its single handler.

Registration happens once at startup. After ``freeze()`` the registry is
read-only and shared by every run.
"""

from typing import Dict

from core.constants import StepType
from core.exceptions import HandlerNotFoundError, RegistryFrozenError
from integrations.registry import IntegrationRegistry
from steps.base_step import BaseStepHandler
from steps.implementations.approval_step import ApprovalBroker, RequireApprovalStep
from steps.implementations.custom_step import CustomActionTable, CustomStep
from steps.implementations.http_step import CallExternalApiStep, InvokeIntegrationStep
from steps.implementations.logic_step import EvaluateConditionStep, WaitStep
from steps.implementations.notification_step import SendNotificationStep
from steps.implementations.record_step import CreateRecordStep
from steps.implementations.script_step import RunScriptStep


class StepHandlerRegistry:
    """Central registry for step handler instances."""

    def __init__(self):
        self._handlers: Dict[StepType, BaseStepHandler] = {}
        self._frozen = False

    def register(self, step_type, handler: BaseStepHandler) -> None:
        """Register the handler for a step type."""
        step_type = StepType(step_type)
        if self._frozen:
            raise RegistryFrozenError(step_type.value)
        self._handlers[step_type] = handler

    def resolve(self, step_type) -> BaseStepHandler:
        """Get the handler for a step type or raise HandlerNotFoundError."""
        try:
            key = StepType(step_type)
        except ValueError:
            raise HandlerNotFoundError(str(step_type))
        handler = self._handlers.get(key)
        if handler is None:
            raise HandlerNotFoundError(key.value)
        return handler

    def has(self, step_type) -> bool:
        try:
            return StepType(step_type) in self._handlers
        except ValueError:
            return False

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def missing_types(self) -> list[StepType]:
        return [step_type for step_type in StepType if step_type not in self._handlers]

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        return [
            {
                "step_type": step_type.value,
                "display_name": handler.display_name,
                "description": handler.description,
                "config_schema": handler.describe_config(),
            }
            for step_type, handler in self._handlers.items()
        ]

    @property
    def available_types(self) -> list:
        return [step_type.value for step_type in self._handlers]


def build_default_registry(
    http_client,
    notifier,
    approvals=None,
    integrations=None,
    custom_actions=None,
    record_sink=None,
    sleep=None,
    freeze: bool = True,
) -> StepHandlerRegistry:
    """Build the registry with one built-in handler per step type.

    Raises:
        RuntimeError: If the handler table does not cover every step type
    """
    approvals = approvals if approvals is not None else ApprovalBroker()
    integrations = integrations if integrations is not None else IntegrationRegistry()
    custom_actions = custom_actions if custom_actions is not None else CustomActionTable()

    table = {
        StepType.CREATE_RECORD: CreateRecordStep(record_sink=record_sink),
        StepType.SEND_NOTIFICATION: SendNotificationStep(notifier),
        StepType.CALL_EXTERNAL_API: CallExternalApiStep(http_client),
        StepType.EVALUATE_CONDITION: EvaluateConditionStep(),
        StepType.WAIT: WaitStep(sleep=sleep),
        StepType.RUN_SCRIPT: RunScriptStep(),
        StepType.REQUIRE_APPROVAL: RequireApprovalStep(approvals),
        StepType.INVOKE_INTEGRATION: InvokeIntegrationStep(http_client, integrations),
        StepType.CUSTOM: CustomStep(custom_actions),
    }

    registry = StepHandlerRegistry()
    for step_type, handler in table.items():
        registry.register(step_type, handler)

    missing = registry.missing_types()
    if missing:
        raise RuntimeError(f"No handler for step types: {', '.join(t.value for t in missing)}")

    if freeze:
        registry.freeze()
    return registry
