"""Version-aware model alias resolution.

Maps tier names ("sonnet", "opus", "flash") to the newest concrete model of
that tier. Within a tier exactly one model carries the alias; the rest are
flagged legacy.
"""

import logging
import re
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Checked in order; first keyword found in the id wins.
TIER_KEYWORDS = ("sonnet", "opus", "haiku", "flash", "pro")

_MAJOR_MINOR_RE = re.compile(r"(\d+)[-.](\d+)")
_FIRST_INT_RE = re.compile(r"(\d+)")
_DATE_SUFFIX_RE = re.compile(r"-\d{8}(?=-|$)")


class ModelInfo(BaseModel):
    """A model an agent can run, plus derived alias metadata."""
    id: str
    name: str = ""
    description: str = ""
    is_default: bool = False
    tier: Optional[str] = None
    version: Optional[str] = None
    alias: Optional[str] = None
    is_legacy: bool = False


CLAUDE_CODE_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="claude-sonnet-4-5",
        name="Claude Sonnet 4.5",
        description="Smart model for complex agents and coding",
        is_default=True,
    ),
    ModelInfo(
        id="claude-opus-4-5",
        name="Claude Opus 4.5",
        description="Maximum intelligence with practical performance",
    ),
    ModelInfo(
        id="claude-haiku-4-5",
        name="Claude Haiku 4.5",
        description="Fastest model for lightweight tasks",
    ),
]

GEMINI_MODELS: List[ModelInfo] = [
    ModelInfo(id="gemini-2.5-flash", name="Gemini 2.5 Flash", description="Fast and efficient", is_default=True),
    ModelInfo(id="gemini-2.5-pro", name="Gemini 2.5 Pro", description="Most capable Gemini model"),
    ModelInfo(id="gemini-2.0-flash", name="Gemini 2.0 Flash", description="Previous generation fast model"),
    ModelInfo(id="gemini-2.0-flash-lite", name="Gemini 2.0 Flash Lite", description="Lightweight model"),
    ModelInfo(id="gemini-1.5-pro", name="Gemini 1.5 Pro", description="Large context window (2M tokens)"),
    ModelInfo(id="gemini-1.5-flash", name="Gemini 1.5 Flash", description="Fast with large context"),
]


def extract_tier(model_id: str) -> Optional[str]:
    lower = model_id.lower()
    for keyword in TIER_KEYWORDS:
        if keyword in lower:
            return keyword
    return None


def extract_version(model_id: str) -> str:
    """Version string from an id: "4-5" and "4.5" become "4.5"; else first integer; else "0".

    Release dates ("-20250514") are not part of the version.
    """
    model_id = _DATE_SUFFIX_RE.sub("", model_id)
    match = _MAJOR_MINOR_RE.search(model_id)
    if match:
        return f"{match.group(1)}.{match.group(2)}"
    match = _FIRST_INT_RE.search(model_id)
    return match.group(1) if match else "0"


def compare_versions(a: str, b: str) -> int:
    """Compare "major[.minor]" strings; a missing minor counts as 0."""
    major_a, _, minor_a = a.partition(".")
    major_b, _, minor_b = b.partition(".")
    key_a = (int(major_a or 0), int(minor_a or 0))
    key_b = (int(major_b or 0), int(minor_b or 0))
    return (key_a > key_b) - (key_a < key_b)


def _newest_first(models: Sequence[ModelInfo]) -> List[ModelInfo]:
    # sorted() is stable, so equal versions keep their input order
    return sorted(
        models,
        key=cmp_to_key(lambda a, b: compare_versions(extract_version(b.id), extract_version(a.id))),
    )


def enrich_models_with_aliases(models: Sequence[ModelInfo]) -> List[ModelInfo]:
    """Derive tier/version for every model and assign one alias per tier.

    Returns new ModelInfo objects in the input order. Models with no
    recognizable tier are returned unchanged. Idempotent: everything is
    derived from the ids alone.
    """
    tier_groups: Dict[str, List[ModelInfo]] = {}
    for model in models:
        tier = extract_tier(model.id)
        if tier:
            tier_groups.setdefault(tier, []).append(model)

    latest_by_tier = {tier: _newest_first(group)[0].id for tier, group in tier_groups.items()}

    enriched = []
    for model in models:
        tier = extract_tier(model.id)
        if not tier:
            enriched.append(model.model_copy())
            continue
        is_latest = latest_by_tier[tier] == model.id
        enriched.append(model.model_copy(update={
            "tier": tier,
            "version": extract_version(model.id),
            "alias": tier if is_latest else None,
            "is_legacy": not is_latest,
        }))
    return enriched


def is_literal_model_id(value: str) -> bool:
    """Ids carry a version or path separator; aliases never do."""
    return "-" in value or "/" in value


def resolve_model_alias(value: str, models: Sequence[ModelInfo]) -> str:
    """Resolve an alias or tier name to a concrete model id.

    Literal ids pass through unchanged. Otherwise the newest model matching
    by alias, tier, or id substring wins, then the registry default, then
    the input itself.
    """
    if is_literal_model_id(value):
        return value

    alias = value.lower()
    enriched = enrich_models_with_aliases(models)
    matches = [
        m for m in enriched
        if m.alias == alias or m.tier == alias or alias in m.id.lower()
    ]

    if not matches:
        default = next((m for m in enriched if m.is_default), None)
        if default is not None:
            logger.debug(f"No model matches '{value}', using default {default.id}")
            return default.id
        return value

    return _newest_first(matches)[0].id


def default_model_id(models: Sequence[ModelInfo]) -> Optional[str]:
    """The designated default, else the first model, else None."""
    for model in models:
        if model.is_default:
            return model.id
    return models[0].id if models else None
