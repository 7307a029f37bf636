import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Profile:
    name: str
    system_prompt: str


BUILTIN_PROFILES: tuple[Profile, ...] = (
    Profile(
        name="Default",
        system_prompt="You are a helpful, practical assistant. Be clear, kind, and concise.",
    ),
    Profile(
        name="Concise Coach",
        system_prompt=(
            "You are a plainspoken, direct coach. Push the user toward productive next steps. "
            "Use bullet points. Avoid long explanations unless asked."
        ),
    ),
)


class ProfileError(Exception):
    pass


def personalization_preamble(user_name: str, pronouns: str = "") -> str:
    name = (user_name or "").strip()
    if not name:
        return ""
    pronouns = (pronouns or "").strip()
    if pronouns:
        return f"Hi {name}, I'll use these pronouns for you: ({pronouns})."
    return f"Hi {name}."


def compose_system_prompt(profile: Profile, preamble: str = "") -> str:
    preamble = (preamble or "").strip()
    if not preamble:
        return profile.system_prompt
    return f"{preamble}\n\n{profile.system_prompt}"


def _parse_profiles(data: Any, source: Path) -> tuple[list[Profile], str | None]:
    if not isinstance(data, dict):
        raise ProfileError(f"{source}: expected a mapping at the top level")
    entries = data.get("profiles") or []
    if not isinstance(entries, list):
        raise ProfileError(f"{source}: 'profiles' must be a list")

    profiles: list[Profile] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ProfileError(f"{source}: profile #{idx} must be a mapping")
        name = str(entry.get("name") or "").strip()
        prompt = str(entry.get("system_prompt") or "").strip()
        if not name or not prompt:
            raise ProfileError(f"{source}: profile #{idx} needs 'name' and 'system_prompt'")
        profiles.append(Profile(name=name, system_prompt=prompt))

    default = data.get("default")
    return profiles, (str(default).strip() or None) if default else None


class ProfileCatalog:
    def __init__(self, profiles: list[Profile] | None = None, default_name: str | None = None):
        self._profiles: dict[str, Profile] = {}
        for profile in BUILTIN_PROFILES:
            self._profiles[profile.name.lower()] = profile
        for profile in profiles or []:
            self._profiles[profile.name.lower()] = profile
        self.default_name = default_name or BUILTIN_PROFILES[0].name

    @classmethod
    def load(cls, path: str | Path | None, default_name: str | None = None) -> "ProfileCatalog":
        if path is None or not Path(path).exists():
            return cls(default_name=default_name)
        source = Path(path)
        try:
            data = yaml.safe_load(source.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ProfileError(f"{source}: invalid YAML: {e}") from e
        profiles, file_default = _parse_profiles(data, source)
        logger.info(f"Loaded {len(profiles)} profile(s) from {source}")
        return cls(profiles, default_name=default_name or file_default)

    def names(self) -> list[str]:
        return [p.name for p in self._profiles.values()]

    def get(self, name: str) -> Profile | None:
        return self._profiles.get((name or "").strip().lower())

    @property
    def default(self) -> Profile:
        profile = self.get(self.default_name)
        if profile is None:
            logger.warning(f"Default profile {self.default_name!r} not found, using built-in")
            return BUILTIN_PROFILES[0]
        return profile
