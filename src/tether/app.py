from __future__ import annotations

import logging

import httpx

from tether.config import TetherConfig
from tether.coordinator import RequestCoordinator
from tether.profiles import (
    Profile,
    ProfileCatalog,
    compose_system_prompt,
    personalization_preamble,
)
from tether.server_model import ModelResolver
from tether.sessions.persistence import LoadOutcome, PersistenceGateway
from tether.sessions.schema import ChatSession
from tether.sessions.store import SessionStore
from tether.titles import TitleGenerator
from tether.transport import ServerClient

logger = logging.getLogger(__name__)


class ChatApp:
    def __init__(
        self,
        config: TetherConfig,
        *,
        profiles: ProfileCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.profiles = profiles or ProfileCatalog.load(
            config.resolved_profiles_path, default_name=config.default_profile
        )
        self.store = SessionStore()
        self.persistence = PersistenceGateway(
            self.store, config.state_path, debounce_s=config.save_debounce_s
        )
        self.client = ServerClient(config.server_url, config.transport, transport=transport)
        self.resolver = ModelResolver(self.client)
        self.titles = TitleGenerator(self.store, self.client, self.resolver)
        self.coordinator = RequestCoordinator(self.store, self.client, self.resolver, self.titles)

    def load(self) -> LoadOutcome:
        return self.persistence.load()

    async def start(self) -> LoadOutcome:
        outcome = self.load()
        await self.resolver.refresh()
        logger.info(f"Server {self.client.base_url}: {self.resolver.status.label}")
        return outcome

    def begin_session(self, profile: Profile | None = None) -> ChatSession:
        profile = profile or self.profiles.default
        preamble = personalization_preamble(self.config.user_name, self.config.user_pronouns)
        session = self.store.begin_session(profile.name, compose_system_prompt(profile, preamble))
        self.coordinator.reset_chat()
        return session

    def ensure_active_session(self) -> ChatSession:
        session = self.store.active_session
        if session is not None:
            return session
        return self.begin_session()

    def delete_session(self, session_id: str) -> bool:
        was_active = self.store.delete_session(session_id)
        if was_active:
            self.begin_session()
        return was_active

    async def aclose(self) -> None:
        await self.coordinator.wait()
        await self.titles.wait()
        self.titles.close()
        await self.persistence.flush()
        self.persistence.close()
        await self.client.aclose()
