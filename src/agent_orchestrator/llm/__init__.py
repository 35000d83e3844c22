"""Model catalogs and alias resolution."""

from .model_aliases import (
    CLAUDE_CODE_MODELS,
    GEMINI_MODELS,
    ModelInfo,
    compare_versions,
    enrich_models_with_aliases,
    resolve_model_alias,
)

__all__ = [
    "CLAUDE_CODE_MODELS",
    "GEMINI_MODELS",
    "ModelInfo",
    "compare_versions",
    "enrich_models_with_aliases",
    "resolve_model_alias",
]
