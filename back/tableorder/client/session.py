import logging
from urllib.parse import urlencode

from ..errors import InvalidSessionError, TableOrderError, rescan_reason
from ..models import TableSessionRead
from .api import ApiClient, mask_id

logger = logging.getLogger(__name__)

MENU_ROUTE = "/menu"
RESCAN_ROUTE = "/invalid-qr"


class SessionResolver:
    """Exchanges a QR token for a table session and tracks the visible route.

    After a resolution attempt, successful or not, `location` never holds the
    raw token.
    """

    def __init__(self, api: ApiClient, location: str = "/"):
        self.api = api
        self.location = location
        self.session: TableSessionRead | None = None
        self.error: TableOrderError | None = None

    def _rescan(self, error: TableOrderError) -> None:
        self.session = None
        self.error = error
        self.location = f"{RESCAN_ROUTE}?{urlencode({'reason': rescan_reason(error)})}"

    async def resolve_qr_token(self, token: str) -> TableSessionRead:
        self.location = f"/t/{token}"
        try:
            data = await self.api.post("/sessions/scan", json={"token": token})
        except TableOrderError as e:
            logger.info(f"QR token rejected: {e.code}")
            self._rescan(e)
            raise
        self.session = TableSessionRead.model_validate(data)
        self.error = None
        self.location = MENU_ROUTE
        logger.info(f"Joined session {mask_id(self.session.session_id)} at table {self.session.table_number}")
        return self.session

    async def current(self) -> TableSessionRead:
        """The session carried by the cookie; raises the session error if there is none."""
        try:
            data = await self.api.get("/sessions/current")
        except InvalidSessionError as e:
            self._rescan(e)
            raise
        self.session = TableSessionRead.model_validate(data)
        return self.session
