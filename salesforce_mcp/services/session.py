"""A live Salesforce session and the hooks used to observe it."""
import asyncio
import logging
from typing import Callable, List, Optional, TypeVar

from simple_salesforce import Salesforce

from salesforce_mcp.errors import (
    SalesforceConnectionError,
    SalesforceMcpError,
    translate_remote_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRIAL_QUERY = "SELECT Id FROM Organization LIMIT 1"

RefreshHandler = Callable[["SalesforceSession"], None]
ErrorHandler = Callable[["SalesforceSession", BaseException], None]


class SalesforceSession:
    """Wraps one authenticated ``simple_salesforce.Salesforce`` client.

    Remote calls go through :meth:`execute`, which runs the blocking client
    call in a worker thread so the event loop stays responsive. Connection-
    class failures seen there are pushed to the registered error handlers;
    a successful :meth:`refresh` is pushed to the refresh handlers.
    """

    def __init__(
        self,
        client: Salesforce,
        strategy_name: str,
        user_id: Optional[str] = None,
        refresher: Optional[Callable[[], str]] = None,
    ):
        self.client = client
        self.strategy_name = strategy_name
        self.user_id = user_id
        self._refresher = refresher
        self._refresh_handlers: List[RefreshHandler] = []
        self._error_handlers: List[ErrorHandler] = []

    @property
    def instance_url(self) -> str:
        return f"https://{self.client.sf_instance}"

    @property
    def api_version(self) -> str:
        return self.client.sf_version

    @property
    def access_token(self) -> str:
        return self.client.session_id

    @property
    def can_refresh(self) -> bool:
        return self._refresher is not None

    def on_refresh(self, handler: RefreshHandler) -> None:
        self._refresh_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    async def execute(self, fn: Callable[[Salesforce], T]) -> T:
        """Run ``fn(client)`` off the event loop and translate its failures."""
        try:
            return await asyncio.to_thread(fn, self.client)
        except SalesforceMcpError:
            raise
        except Exception as e:
            translated = translate_remote_error(e)
            if translated is e:
                raise
            if isinstance(translated, SalesforceConnectionError):
                self._notify_error(translated)
            raise translated from e

    async def trial_round_trip(self) -> None:
        """Side-effect-free query proving the session still works.

        Failures are raised untranslated and are not pushed to the error
        handlers; the caller decides whether the session can be healed.
        """
        await asyncio.to_thread(self.client.query, TRIAL_QUERY)

    async def refresh(self) -> None:
        """Exchange the refresh token for a new access token, in place."""
        if self._refresher is None:
            raise SalesforceConnectionError(
                f"{self.strategy_name} sessions cannot refresh their access token"
            )
        token = await asyncio.to_thread(self._refresher)
        self.client = Salesforce(
            instance_url=self.instance_url,
            session_id=token,
            version=self.api_version,
            session=self.client.session,
        )
        logger.info("🔄 Access token refreshed for %s", self.instance_url)
        for handler in list(self._refresh_handlers):
            handler(self)

    def _notify_error(self, error: BaseException) -> None:
        logger.warning("Connection error on %s session: %s", self.strategy_name, error)
        for handler in list(self._error_handlers):
            handler(self, error)

    def describe(self) -> dict:
        return {
            "instanceUrl": self.instance_url,
            "apiVersion": self.api_version,
            "strategy": self.strategy_name,
            "userId": self.user_id,
        }
