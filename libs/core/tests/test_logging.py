from libs.core import logging as core_logging


def test_redact_secrets_masks_credential_keys() -> None:
    event = {
        "event": "token_exchange_failed",
        "Authorization": "Bearer abc",
        "access_token": "abc",
        "audience": "https://graph.microsoft.com/.default",
    }
    redacted = core_logging._redact_secrets(None, "info", event)
    assert redacted["Authorization"] == "***"
    assert redacted["access_token"] == "***"
    assert redacted["audience"] == "https://graph.microsoft.com/.default"


def test_get_logger_binds_service_and_component() -> None:
    logger = core_logging.get_logger("dayplanner", component="plugin_loader")
    bound = logger.bind()
    assert bound._context["service"] == "dayplanner"
    assert bound._context["component"] == "plugin_loader"
