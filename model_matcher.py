"""Cross-provider model equivalence over parsed model ids."""

from __future__ import annotations

from typing import Optional

from model_id_parser import ParsedModelId


def _normalize_generation(gen: str) -> str:
    # "2.0" and "2" name the same generation
    return gen[:-2] if gen.endswith(".0") else gen


def _flag(value: Optional[bool]) -> bool:
    return value is True


def models_match(a: ParsedModelId, b: ParsedModelId) -> bool:
    """
    Return True when `a` and `b` denote the same logical model.

    Compares family, generation, tier, variant, parameter counts and the
    open-source/safety flags. Dates, context size, quantization and wrapper
    metadata are ignored, so two builds of one model still match.
    """
    return (
        a.family == b.family
        and _normalize_generation(a.generation) == _normalize_generation(b.generation)
        and a.tier == b.tier
        and a.variant == b.variant
        and a.size_billions == b.size_billions
        and a.active_billions == b.active_billions
        and _flag(a.is_open_source) == _flag(b.is_open_source)
        and _flag(a.is_safety) == _flag(b.is_safety)
    )
