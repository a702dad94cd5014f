from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

import httpx
import msal

from . import logging as core_logging
from .cancellation import is_cancelled, run_cancellable
from .config import IdentityClientConfig
from .errors import RequestCancelledError
from .models import TokenExchangeOutcome, TokenFailure

LOGGER = core_logging.get_logger("dayplanner", component="token_exchange")

AppFactory = Callable[[IdentityClientConfig], Any]


def build_confidential_client(config: IdentityClientConfig) -> msal.ConfidentialClientApplication:
    # A fresh, empty cache per exchange: no token outlives the call that fetched it.
    return msal.ConfidentialClientApplication(
        client_id=config.client_id,
        client_credential=config.client_secret,
        authority=config.authority,
        token_cache=msal.TokenCache(),
    )


class TokenExchanger:
    """On-behalf-of exchange of an inbound user token for a downstream token.

    Never raises for exchange problems: every failure is reported as a
    ``TokenExchangeOutcome`` with an empty token and a reason.
    """

    def __init__(
        self,
        config: IdentityClientConfig,
        timeout_s: float = 15.0,
        app_factory: AppFactory = build_confidential_client,
    ) -> None:
        self._config = config
        self._timeout_s = timeout_s
        self._app_factory = app_factory

    async def exchange(
        self,
        credential: str,
        audience: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TokenExchangeOutcome:
        if not credential or not credential.strip():
            return TokenExchangeOutcome.failed(TokenFailure.missing_credential)
        if is_cancelled(cancel_event):
            return TokenExchangeOutcome.failed(TokenFailure.cancelled)
        try:
            result = await run_cancellable(
                asyncio.to_thread(self._acquire, credential.strip(), audience),
                cancel_event,
                timeout_s=self._timeout_s,
            )
        except RequestCancelledError:
            LOGGER.warning("token_exchange_failed", reason=TokenFailure.cancelled.value, audience=audience)
            return TokenExchangeOutcome.failed(TokenFailure.cancelled)
        except asyncio.TimeoutError:
            LOGGER.warning("token_exchange_failed", reason=TokenFailure.timed_out.value, audience=audience)
            return TokenExchangeOutcome.failed(
                TokenFailure.timed_out, f"no response within {self._timeout_s}s"
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "token_exchange_failed",
                reason=TokenFailure.exchange_failed.value,
                audience=audience,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return TokenExchangeOutcome.failed(TokenFailure.exchange_failed, str(exc))
        return self._to_outcome(result, audience)

    def _acquire(self, credential: str, audience: str) -> Dict[str, Any]:
        app = self._app_factory(self._config)
        return app.acquire_token_on_behalf_of(user_assertion=credential, scopes=[audience])

    def _to_outcome(self, result: Any, audience: str) -> TokenExchangeOutcome:
        token = result.get("access_token") if isinstance(result, dict) else None
        if isinstance(token, str) and token:
            LOGGER.info("token_exchange_succeeded", audience=audience)
            return TokenExchangeOutcome.success(token)
        detail = "no_access_token"
        if isinstance(result, dict):
            detail = str(result.get("error_description") or result.get("error") or detail)
        LOGGER.warning(
            "token_exchange_failed",
            reason=TokenFailure.exchange_failed.value,
            audience=audience,
            error=detail,
        )
        return TokenExchangeOutcome.failed(TokenFailure.exchange_failed, detail)


class BearerAuthProvider:
    """Attaches a freshly exchanged bearer token to each outgoing request."""

    def __init__(
        self,
        exchanger: TokenExchanger,
        credential: str,
        audience: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self._exchanger = exchanger
        self._credential = credential
        self._audience = audience
        self._cancel_event = cancel_event

    async def authenticate_request(self, request: httpx.Request) -> TokenExchangeOutcome:
        outcome = await self._exchanger.exchange(self._credential, self._audience, self._cancel_event)
        # An empty token still goes out; the downstream API answers 401 and the model sees it.
        request.headers["Authorization"] = f"Bearer {outcome.access_token}".strip()
        return outcome
