from __future__ import annotations


class DayPlannerError(Exception):
    status_code = 500

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(DayPlannerError):
    status_code = 500


class PluginLoadError(DayPlannerError):
    """A plugin directory could not be turned into tools.

    The whole load is aborted; ``plugin_name`` identifies the failing plugin
    and the underlying exception is chained as ``__cause__``.
    """

    status_code = 500

    def __init__(self, plugin_name: str, cause: BaseException | str) -> None:
        super().__init__(f"Plugin creation failed for {plugin_name}: {cause}")
        self.plugin_name = plugin_name
        self.cause = cause


class OrchestrationError(DayPlannerError):
    status_code = 502


class StructuredOutputError(OrchestrationError):
    status_code = 502


class RequestCancelledError(DayPlannerError):
    status_code = 504

    def __init__(self, detail: str = "request_cancelled") -> None:
        super().__init__(detail)
