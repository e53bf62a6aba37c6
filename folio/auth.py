"""Actor resolution for REST API endpoints.

Identity and role come from the upstream session provider: either a configured
API key (each key record carries an actor id and role) or, when keys are not
required, the trusted ``X-Actor-Id`` / ``X-Actor-Role`` headers set by a
gateway in front of the service.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache

from fastapi import Header
from pydantic import BaseModel, Field, ValidationError

from folio.config import settings
from folio.errors import Unauthorized
from folio.models import Role
from folio.permissions import Actor, make_actor

logger = logging.getLogger(__name__)


class ApiKeyRecord(BaseModel):
    """Configuration record for one API key."""

    key: str = Field(min_length=8)
    actor_id: str = Field(min_length=1)
    role: Role
    key_id: str = ""


def _normalize_records(raw: object) -> list[ApiKeyRecord]:
    records: list[ApiKeyRecord] = []

    if isinstance(raw, list):
        items = [item for item in raw if isinstance(item, dict)]
    elif isinstance(raw, dict):
        # Support dict form: {"<api-key>": {"actor_id": "...", "role": "..."}}
        items = [{"key": key, **meta} for key, meta in raw.items() if isinstance(meta, dict)]
    else:
        items = []

    for item in items:
        try:
            record = ApiKeyRecord(**item)
        except ValidationError:
            logger.warning("Ignoring malformed API key record for %s", item.get("actor_id", "?"))
            continue
        if not record.key_id:
            record.key_id = f"{record.role.value}:{record.actor_id}"
        records.append(record)
    return records


@lru_cache(maxsize=1)
def _key_index() -> dict[str, ApiKeyRecord]:
    raw = settings.security.api_keys_json.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.error("FOLIO_API_KEYS_JSON is not valid JSON; no API keys loaded")
        return {}
    return {rec.key: rec for rec in _normalize_records(parsed)}


def reload_api_key_cache() -> None:
    """Clear cached API keys (useful in tests or runtime key rotation hooks)."""
    _key_index.cache_clear()


async def get_actor(
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    """FastAPI dependency: resolve the calling actor or fail Unauthorized."""
    if x_api_key:
        record = _key_index().get(x_api_key)
        if record is None:
            raise Unauthorized("actor_required", reason="invalid_api_key")
        return Actor(actor_id=record.actor_id, role=record.role)

    if settings.security.require_api_key:
        raise Unauthorized("actor_required", reason="missing_api_key")

    return make_actor(x_actor_id, x_actor_role)
