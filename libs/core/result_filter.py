from __future__ import annotations

from .models import ApiOperationResponse, ToolInvocationResult, ToolValueType


class ExpectedSchemaFilter:
    """Drops the echoed response schema from API operation results.

    The schema is only needed to validate the response; sending it back to
    the model would bloat every following turn.
    """

    def on_invocation_complete(self, result: ToolInvocationResult) -> ToolInvocationResult:
        if result.value_type != ToolValueType.api_operation_response:
            return result
        response = result.value
        if not isinstance(response, ApiOperationResponse) or response.expected_schema is None:
            return result
        return result.model_copy(
            update={"value": response.model_copy(update={"expected_schema": None})}
        )

    def __call__(self, result: ToolInvocationResult) -> ToolInvocationResult:
        return self.on_invocation_complete(result)
