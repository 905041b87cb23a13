"""
Campaign lookup.

A campaign selects the system prompt and voice for a call. Storage is an
external concern; the bridge only needs `resolve(selector)`. The shipped
resolver is backed by a mapping, optionally loaded from a JSON file whose
records mirror the campaigns table (slug, name, campaign_prompt, voice_id).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

import msgspec
import structlog

logger = structlog.get_logger(__name__)


class CampaignRecord(msgspec.Struct):
    slug: str
    name: str = ""
    description: Optional[str] = None
    campaign_prompt: Optional[str] = None
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class CampaignConfig:
    """Prompt/voice pair applied to a call."""
    prompt: Optional[str] = None
    voice_id: Optional[str] = None


@dataclass(frozen=True)
class SessionProfile:
    """What a session is created with, after defaults are applied."""
    system_prompt: str
    voice_id: str
    campaign: Optional[str] = None
    matched: bool = False


class CampaignResolver(Protocol):
    async def resolve(self, selector: str) -> Optional[CampaignConfig]:
        ...


class StaticCampaignResolver:
    """Resolves campaigns from an in-memory mapping of slug -> CampaignConfig."""

    def __init__(self, campaigns: Optional[Mapping[str, CampaignConfig]] = None):
        self._campaigns: Dict[str, CampaignConfig] = dict(campaigns or {})

    @classmethod
    def from_records(cls, records: Iterable[CampaignRecord]) -> "StaticCampaignResolver":
        return cls({
            r.slug: CampaignConfig(prompt=r.campaign_prompt, voice_id=r.voice_id)
            for r in records
        })

    @classmethod
    def from_file(cls, path: str) -> "StaticCampaignResolver":
        """
        Load campaigns from a JSON file.

        The file holds either a list of records or an object with a
        "campaigns" list.
        """
        raw = Path(path).read_bytes()
        try:
            data = msgspec.json.decode(raw)
            if isinstance(data, dict):
                data = data.get("campaigns", [])
            records = msgspec.convert(data, type=List[CampaignRecord])
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            raise ValueError(f"Invalid campaigns file {path}: {e}") from e

        resolver = cls.from_records(records)
        logger.info("Campaigns loaded", path=path, count=len(resolver))
        return resolver

    async def resolve(self, selector: str) -> Optional[CampaignConfig]:
        return self._campaigns.get(selector)

    def __len__(self) -> int:
        return len(self._campaigns)


async def resolve_session_profile(
    resolver: Optional[CampaignResolver],
    selector: Optional[str],
    config: Any,
) -> SessionProfile:
    """
    Resolve the prompt and voice for a new call.

    Falls back to the configured defaults when there is no selector, the
    campaign is unknown, a field is empty, or the lookup itself fails.
    """
    default = SessionProfile(
        system_prompt=config.default_system_prompt,
        voice_id=config.default_voice_id,
        campaign=selector or None,
    )
    if not selector or resolver is None:
        return default

    try:
        campaign = await resolver.resolve(selector)
    except Exception as e:
        logger.warning("Campaign lookup failed, using defaults", campaign=selector, error=str(e))
        return default

    if campaign is None:
        logger.warning("Campaign not found, using defaults", campaign=selector)
        return default

    return SessionProfile(
        system_prompt=campaign.prompt or config.default_system_prompt,
        voice_id=campaign.voice_id or config.default_voice_id,
        campaign=selector,
        matched=True,
    )
