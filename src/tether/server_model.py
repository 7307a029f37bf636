import logging
from dataclasses import dataclass

from tether.transport import BadURLError, ClientError, ServerClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ServerModelStatus:
    reachable: bool
    model: str | None
    label: str


UNKNOWN_STATUS = ServerModelStatus(reachable=False, model=None, label="Unknown")


class ModelResolver:
    """Tracks the model the server currently has loaded.

    The first entry of ``/v1/models`` is treated as the loaded model. An empty
    list means the server is reachable but has nothing loaded, which is a
    different state from being unreachable. A stale non-empty list reported
    while the server unloads a model cannot be told apart from a loaded one.
    """

    def __init__(self, client: ServerClient):
        self.client = client
        self.status: ServerModelStatus = UNKNOWN_STATUS

    @property
    def resolved_model(self) -> str | None:
        return self.status.model

    async def refresh(self) -> ServerModelStatus:
        try:
            models = await self.client.list_models()
        except BadURLError:
            self.status = ServerModelStatus(reachable=False, model=None, label="Invalid server URL")
            return self.status
        except ClientError as e:
            logger.info(f"Model discovery failed ({e.kind}) for {self.client.base_url}")
            self.status = ServerModelStatus(reachable=False, model=None, label="Unreachable")
            return self.status

        first = models[0].strip() if models else ""
        if first:
            self.status = ServerModelStatus(reachable=True, model=first, label=f"Connected — {first}")
        else:
            self.status = ServerModelStatus(
                reachable=True, model=None, label="Connected — No model loaded"
            )
        logger.debug(f"Model status: {self.status.label}")
        return self.status
