"""
Model identifier parsing.

Vendors spell the same model in very different ways:

    anthropic               claude-sonnet-4-5-20250929
    amazon-bedrock          global.anthropic.claude-sonnet-4-5-20250929-v1:0
    google-vertex-anthropic claude-sonnet-4-5@20250929
    openrouter              anthropic/claude-sonnet-4.5

`parse_model_id` works in two phases. First the platform wrapper is removed
(region, vendor prefix, deployment version, routing tag, "-maas" suffix), then
the bare id is matched against a list of known family roots and handed to a
family-specific sub-parser that extracts the canonical features used for
cross-provider matching. The function is total: any string on any platform
produces a result with a non-empty family.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

PLATFORMS = (
    "amazon-bedrock",
    "google-vertex-anthropic",
    "google-vertex",
    "openrouter",
    "anthropic",
    "azure",
    "openai",
    "generic",
)

REGIONS = frozenset({"us", "eu", "ap", "global"})

CLAUDE_TIERS = frozenset({"opus", "sonnet", "haiku", "instant"})

SIZE_TIERS = frozenset(
    {
        # quality tiers
        "opus",
        "sonnet",
        "haiku",
        "instant",
        # size tiers
        "nano",
        "micro",
        "mini",
        "small",
        "medium",
        "large",
        # speed/cost tiers
        "lite",
        "flash",
        "express",
        "turbo",
        # premium tiers
        "pro",
        "premier",
        "max",
    }
)

VARIANTS = frozenset(
    {
        "instruct",
        "chat",
        "codex",
        "coder",
        "code",
        "vision",
        "vl",
        "multimodal",
        "thinking",
        "reasoning",
        "fast",
        "it",
        "moe",
        "deep-research",
    }
)

# Most specific first; "o" must stay last.
FAMILY_ROOTS = (
    "gpt-oss-safeguard",
    "gpt-oss",
    "gpt",
    "claude",
    "gemini",
    "gemma",
    "meta-llama",
    "llama",
    "grok-code",
    "grok",
    "glm",
    "phi",
    "mistral",
    "mixtral",
    "ministral",
    "voxtral",
    "codestral",
    "deepseek",
    "command-r-plus",
    "command-r",
    "command",
    "jamba",
    "titan",
    "nova",
    "nemotron",
    "palmyra",
    "minimax",
    "kimi",
    "qwen",
    "lfm",
    "step",
    "trinity",
    "pony",
    "o",
)

_GEMINI_TIER_TOKENS = frozenset({"flash", "lite", "pro", "embedding"})
_GEMINI_BARE_TIER_TOKENS = frozenset({"flash", "lite", "pro"})

_DATE8_RE = re.compile(r"(^|[-_])(\d{8})($|[-_])")
_DATE_ISO_RE = re.compile(r"(^|[-_])(\d{4})-(\d{2})-(\d{2})($|[-_])")
_DOT_VERSION_RE = re.compile(r"(\d+)\.(\d+)")
_DELIM_RE = re.compile(r"[-_]")
_EDGE_DASH_RE = re.compile(r"^-|-$")


@dataclass(frozen=True)
class ParsedModelId:
    """Canonical features of one model identifier."""

    raw: str
    platform: str

    # wrapper metadata
    region: Optional[str] = None
    vendor: Optional[str] = None
    deployment_version: Optional[str] = None
    routing_tag: Optional[str] = None
    maas_suffix: Optional[bool] = None

    # identity used for matching
    family: str = ""
    generation: str = ""
    tier: Optional[str] = None
    variant: Optional[str] = None

    # secondary features
    size_billions: Optional[int] = None
    active_billions: Optional[int] = None
    date: Optional[str] = None
    context_k: Optional[int] = None
    quantization: Optional[str] = None

    # flags
    is_open_source: Optional[bool] = None
    is_safety: Optional[bool] = None
    is_preview: Optional[bool] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tokens(s: str) -> List[str]:
    return [t for t in _DELIM_RE.split(s) if t]


def _trim_dashes(s: str) -> str:
    return _EDGE_DASH_RE.sub("", s)


def _is_digit_led(s: str) -> bool:
    return bool(s) and s[0].isdigit()


def _append(current: Optional[str], tok: str) -> str:
    return f"{current}-{tok}" if current else tok


def dot_version_to_dash(s: str) -> str:
    """Rewrite dotted versions ("4.5") with dashes ("4-5")."""
    return _DOT_VERSION_RE.sub(r"\1-\2", s)


def _cut_date(s: str, m: "re.Match[str]", length: int) -> str:
    start = m.start() + len(m.group(1))
    end = start + length
    rest = s[: start - 1 if start > 0 else start] + s[end:]
    return _trim_dashes(rest)


def extract_date8(s: str) -> Optional[Tuple[str, str]]:
    """Pull a YYYYMMDD date (years 2020-2030) out of `s`; returns (date, rest)."""
    m = _DATE8_RE.search(s)
    if not m:
        return None
    year = int(m.group(2)[:4])
    if year < 2020 or year > 2030:
        return None
    return m.group(2), _cut_date(s, m, 8)


def extract_date_iso(s: str) -> Optional[Tuple[str, str]]:
    """Pull a YYYY-MM-DD date (years 2020-2030) out of `s`; returns (YYYYMMDD, rest)."""
    m = _DATE_ISO_RE.search(s)
    if not m:
        return None
    year = int(m.group(2))
    if year < 2020 or year > 2030:
        return None
    return f"{m.group(2)}{m.group(3)}{m.group(4)}", _cut_date(s, m, 10)


# ---------------------------------------------------------------------------
# Phase 1: strip the platform wrapper
# ---------------------------------------------------------------------------

def _strip_bedrock(raw: str) -> Dict[str, object]:
    model = raw
    region = None
    vendor = None
    deployment_version = None

    dv = re.search(r":(\d[\w:]*?)$", model)
    if dv:
        deployment_version = dv.group(1)
        model = model[: len(model) - len(dv.group(0))]

    parts = model.split(".")
    if len(parts) >= 2:
        start = 0
        if parts[0] in REGIONS:
            region = parts[0]
            start = 1
        vendor = parts[start]
        model = ".".join(parts[start + 1:])

    api_ver = re.search(r"-v(\d+)$", model)
    if api_ver:
        if deployment_version is None:
            deployment_version = f"v{api_ver.group(1)}"
        model = model[: len(model) - len(api_ver.group(0))]

    return {
        "bare_id": model,
        "region": region,
        "vendor": vendor,
        "deployment_version": deployment_version,
    }


def _strip_vertex_anthropic(raw: str) -> Dict[str, object]:
    at = raw.find("@")
    if at == -1:
        return {"bare_id": raw}
    return {"bare_id": raw[:at], "routing_tag": raw[at + 1:]}


def _strip_vertex(raw: str) -> Dict[str, object]:
    model = raw
    vendor = None
    maas = None
    slash = model.find("/")
    if slash != -1:
        vendor = model[:slash]
        model = model[slash + 1:]
    if model.endswith("-maas"):
        maas = True
        model = model[:-5]
    return {"bare_id": model, "vendor": vendor, "maas_suffix": maas}


def _strip_openrouter(raw: str) -> Dict[str, object]:
    slash = raw.find("/")
    if slash == -1:
        return {"bare_id": raw}
    return {"bare_id": raw[slash + 1:], "vendor": raw[:slash]}


def strip_provider_wrapper(raw: str, platform: str) -> Dict[str, object]:
    """Remove platform-specific decoration; returns bare_id plus wrapper metadata."""
    if platform == "amazon-bedrock":
        return _strip_bedrock(raw)
    if platform == "google-vertex-anthropic":
        return _strip_vertex_anthropic(raw)
    if platform == "google-vertex":
        return _strip_vertex(raw)
    if platform == "openrouter":
        return _strip_openrouter(raw)
    return {"bare_id": raw}


# ---------------------------------------------------------------------------
# Phase 2: bare id -> canonical features
# ---------------------------------------------------------------------------

def detect_family(bare_id: str) -> Tuple[str, str]:
    """Return (family, rest) where rest is the bare id after the family root."""
    lower = bare_id.lower()
    normalized = dot_version_to_dash(lower)

    for root in FAMILY_ROOTS:
        if root == "o":
            if re.match(r"o\d", lower):
                return "o", bare_id[1:]
            continue

        root_dashed = dot_version_to_dash(root)
        if not normalized.startswith(root_dashed):
            continue
        nxt = normalized[len(root_dashed): len(root_dashed) + 1]
        if nxt == "" or nxt in ("-", "_") or nxt.isdigit():
            rest = bare_id[len(root_dashed):]
            if rest.startswith(("-", "_")):
                rest = rest[1:]
            return root, rest

    # Unknown family: first token before a delimiter
    m = _DELIM_RE.search(bare_id)
    if m is None:
        family, rest = lower, ""
    else:
        family, rest = bare_id[: m.start()].lower(), bare_id[m.start() + 1:]

    if not family:
        toks = _tokens(lower)
        family = toks[0] if toks else lower
    return family, rest


def _parse_claude(rest: str) -> Dict[str, object]:
    """
    Claude naming flipped between generations:

        gen 3:  {GEN}-{TIER}-{DATE}    3-5-sonnet-20240620
        gen 4+: {TIER}-{GEN}-{DATE}    sonnet-4-5-20250929
    """
    out: Dict[str, object] = {"family": "claude", "generation": ""}

    working = rest
    d8 = extract_date8(working)
    if d8:
        out["date"], working = d8

    tokens = _tokens(working)
    first = tokens[0].lower() if tokens else ""

    if first in CLAUDE_TIERS:
        out["tier"] = first
        gen_parts = []
        i = 1
        while i < len(tokens) and re.fullmatch(r"\d[\d.]*", tokens[i]):
            gen_parts.append(tokens[i])
            i += 1
        if gen_parts:
            out["generation"] = ".".join(gen_parts)
    elif re.fullmatch(r"\d+", first):
        gen_parts = [first]
        i = 1
        while i < len(tokens) and re.fullmatch(r"\d+", tokens[i]):
            gen_parts.append(tokens[i])
            i += 1
        out["generation"] = ".".join(gen_parts)
        if i < len(tokens) and tokens[i].lower() in CLAUDE_TIERS:
            out["tier"] = tokens[i].lower()
    elif first == "instant":
        out["tier"] = "instant"
        out["generation"] = "1"
    elif first.startswith("v"):
        out["generation"] = first[1:]

    return out


def _parse_gpt_family(family: str, rest: str) -> Dict[str, object]:
    """gpt-{GEN}[-{TIER}][-{DATE}], gpt-oss-{SIZE}b, gpt-oss-safeguard-{SIZE}b."""
    out: Dict[str, object] = {"family": family, "generation": ""}

    if family == "gpt-oss-safeguard":
        out["is_open_source"] = True
        out["is_safety"] = True
    elif family == "gpt-oss":
        out["is_open_source"] = True

    working = rest
    iso = extract_date_iso(working)
    if iso:
        out["date"], working = iso
    else:
        d8 = extract_date8(working)
        if d8:
            out["date"], working = d8

    size = re.search(r"(\d+)b(?:\b|$|-)", working, re.IGNORECASE)
    if size:
        out["size_billions"] = int(size.group(1))
        working = _trim_dashes(working.replace(size.group(0), "", 1))

    if family in ("gpt-oss", "gpt-oss-safeguard"):
        # open-weight models are keyed on size, not generation
        return out

    tokens = _tokens(working)
    tier: Optional[str] = None
    variant: Optional[str] = None

    if tokens and _is_digit_led(tokens[0]):
        out["generation"] = tokens[0]
        for tok in (t.lower() for t in tokens[1:]):
            if tok in SIZE_TIERS:
                if tier is None:
                    tier = tok
                elif variant is None and tier not in SIZE_TIERS:
                    variant = tier
                    tier = tok
            elif tok in VARIANTS or tok == "spark":
                variant = _append(variant, tok)
            elif tok == "plus":
                variant = _append(variant, "plus")

    if tier in ("codex", "chat"):
        variant = tier
        tier = None

    # gpt-5.1-codex-mini -> variant codex, tier mini
    if variant == "codex" and len(tokens) > 2:
        last = tokens[-1].lower()
        if last in SIZE_TIERS and last != "codex":
            tier = last

    out["tier"] = tier
    out["variant"] = variant
    return out


def _parse_gemini(rest: str) -> Dict[str, object]:
    """gemini-{GEN}-{TIER}[-{VARIANT}][-preview[-MM-YYYY]]."""
    out: Dict[str, object] = {"family": "gemini", "generation": ""}

    working = rest
    d8 = extract_date8(working)
    if d8:
        out["date"], working = d8

    working = re.sub(r"-latest$", "", working)

    # preview builds carry their own date which is not a release date
    preview = re.search(r"-(preview)(?:-(\d{2})-(\d{2,4}))?$", working)
    if preview:
        out["is_preview"] = True
        working = working[: len(working) - len(preview.group(0))]

    tokens = _tokens(working)
    if tokens and _is_digit_led(tokens[0]):
        out["generation"] = tokens[0]
        tier_parts = [t.lower() for t in tokens[1:] if t.lower() in _GEMINI_TIER_TOKENS]
    else:
        tier_parts = [t.lower() for t in tokens if t.lower() in _GEMINI_BARE_TIER_TOKENS]
    if tier_parts:
        out["tier"] = "-".join(tier_parts)
    return out


def _parse_llama(rest: str) -> Dict[str, object]:
    """
    Bedrock: llama{GEN}[-{MINOR}]-{SIZE}b-instruct
    Azure:   [meta-]llama-{GEN}[-{SIZE}b][-variant]-instruct
    """
    out: Dict[str, object] = {"family": "llama", "generation": ""}

    working = re.sub(r"^meta-?", "", rest, flags=re.IGNORECASE)
    working = re.sub(r"^llama-?", "", working, flags=re.IGNORECASE)
    tokens = _tokens(working)

    gen_parts: List[str] = []
    i = 0
    if tokens and _is_digit_led(tokens[0]):
        gen_parts.append(tokens[0])
        i = 1
        if "." not in tokens[0]:
            while i < len(tokens) and re.fullmatch(r"\d+", tokens[i]) and int(tokens[i]) < 10:
                gen_parts.append(tokens[i])
                i += 1
    out["generation"] = ".".join(gen_parts)

    variant: Optional[str] = None
    for tok in (t.lower() for t in tokens[i:]):
        m = re.fullmatch(r"(\d+)b", tok)
        if m:
            out["size_billions"] = int(m.group(1))
            continue
        if re.fullmatch(r"\d+e", tok):
            continue  # expert count
        if re.fullmatch(r"fp\d+", tok):
            out["quantization"] = tok
            continue
        m = re.fullmatch(r"(\d+)k", tok)
        if m:
            out["context_k"] = int(m.group(1))
            continue
        if tok in ("instruct", "vision", "it"):
            variant = _append(variant, tok)
            continue
        if tok in ("scout", "maverick"):
            out["tier"] = tok
            continue
    out["variant"] = variant
    return out


def _parse_o_series(rest: str) -> Dict[str, object]:
    """o1, o3-mini, o4-mini-deep-research."""
    out: Dict[str, object] = {"family": "o", "generation": ""}
    tokens = _tokens(rest)

    if tokens and re.fullmatch(r"\d+", tokens[0]):
        out["generation"] = tokens[0]

    variant: Optional[str] = None
    i = 1
    while i < len(tokens):
        tok = tokens[i].lower()
        if tok in SIZE_TIERS:
            out["tier"] = tok
        elif tok == "preview":
            out["is_preview"] = True
        elif tok in VARIANTS:
            variant = _append(variant, tok)
        elif tok == "deep":
            nxt = tokens[i + 1].lower() if i + 1 < len(tokens) else ""
            if nxt == "research":
                variant = "deep-research"
                i += 1
        i += 1
    out["variant"] = variant
    return out


def _remove_feature(working: str, pattern: str) -> str:
    return _trim_dashes(re.sub(pattern, "-", working, count=1, flags=re.IGNORECASE))


def _parse_generic(family: str, rest: str) -> Dict[str, object]:
    """{FAMILY}-{GEN}[-{TIER}][-{SIZE}b][-{VARIANT}][-{DATE}] (grok, glm, mistral, qwen, ...)."""
    out: Dict[str, object] = {"family": family, "generation": ""}

    working = rest
    d8 = extract_date8(working)
    if d8:
        out["date"], working = d8

    # YYMM dates, e.g. mistral-small-2503
    d4 = re.search(r"(?:^|-)(\d{4})(?:$|-)", working)
    if d4 and "date" not in out:
        val = int(d4.group(1))
        if 2000 < val < 2600:
            out["date"] = d4.group(1)
            prefix = working[: d4.start()] if d4.start() > 0 else ""
            suffix = working[d4.end():]
            working = _trim_dashes("-".join(p for p in (prefix, suffix) if p))

    size = re.search(r"(?:^|-)(\d+)b(?:$|-)", working, re.IGNORECASE)
    if size:
        out["size_billions"] = int(size.group(1))
        working = _remove_feature(working, rf"-?{size.group(1)}b-?")

    active = re.search(r"(?:^|-)a(\d+)b(?:$|-)", working, re.IGNORECASE)
    if active:
        out["active_billions"] = int(active.group(1))
        working = _remove_feature(working, rf"-?a{active.group(1)}b-?")

    ctx = re.search(r"(?:^|-)(\d+)k(?:$|-)", working, re.IGNORECASE)
    if ctx:
        out["context_k"] = int(ctx.group(1))
        working = _remove_feature(working, rf"-?{ctx.group(1)}k-?")

    quant = re.search(r"(?:^|-)fp(\d+)(?:$|-)", working, re.IGNORECASE)
    if quant:
        out["quantization"] = f"fp{quant.group(1)}"
        working = _remove_feature(working, rf"-?fp{quant.group(1)}-?")

    working = re.sub(r"-v\d+$", "", working)
    tokens = _tokens(working)

    generation = ""
    i = 0
    if tokens and _is_digit_led(tokens[0]):
        generation = tokens[0]
        i = 1
        if i < len(tokens) and re.fullmatch(r"\d+", tokens[i]) and int(tokens[i]) < 10:
            generation = f"{generation}.{tokens[i]}"
            i += 1
    elif tokens and re.fullmatch(r"[vmrk]\d[\d.]*", tokens[0], re.IGNORECASE):
        # v3.2, m2.1, r1, k2.5 keep their prefix
        generation = tokens[0].lower()
        i = 1

    tier: Optional[str] = None
    variant: Optional[str] = None
    for tok in (t.lower() for t in tokens[i:]):
        if tok in SIZE_TIERS:
            if tier is None:
                tier = tok
        elif tok in VARIANTS:
            variant = _append(variant, tok)
        elif tok == "preview":
            out["is_preview"] = True
        elif tok in ("latest", "default", "text"):
            pass
        elif tok in ("safeguard", "safety"):
            out["is_safety"] = True
        elif tok == "oss":
            out["is_open_source"] = True
        elif tok == "plus":
            if variant:
                variant = f"{variant}-plus"
            elif tier:
                tier = f"{tier}-plus"
        elif tok == "next":
            variant = _append(variant, "next")
        elif tok == "light":
            tier = "light"
        elif re.fullmatch(r"\d[\d.]*", tok) and generation == "":
            # grok-code-fast-1 -> generation "1"
            generation = tok

    out["generation"] = generation
    out["tier"] = tier
    out["variant"] = variant
    return out


def parse_bare_id(bare_id: str) -> Dict[str, object]:
    """Dispatch a bare id to the parser for its family."""
    family, rest = detect_family(bare_id)

    if family == "claude":
        return _parse_claude(rest)
    if family in ("gpt", "gpt-oss", "gpt-oss-safeguard"):
        return _parse_gpt_family(family, rest)
    if family == "gemini":
        return _parse_gemini(rest)
    if family in ("meta-llama", "llama"):
        return _parse_llama(rest)
    if family == "o":
        return _parse_o_series(rest)
    return _parse_generic(family, rest)


def parse_model_id(raw: str, platform: str) -> ParsedModelId:
    """Parse one raw model id from `platform` into canonical features. Never raises."""
    stripped = strip_provider_wrapper(raw, platform)
    features = parse_bare_id(str(stripped["bare_id"]))

    family = str(features.pop("family") or "") or raw.lower() or "unknown"
    return ParsedModelId(
        raw=raw,
        platform=platform,
        region=stripped.get("region"),  # type: ignore[arg-type]
        vendor=stripped.get("vendor"),  # type: ignore[arg-type]
        deployment_version=stripped.get("deployment_version"),  # type: ignore[arg-type]
        routing_tag=stripped.get("routing_tag"),  # type: ignore[arg-type]
        maas_suffix=stripped.get("maas_suffix"),  # type: ignore[arg-type]
        family=family,
        **features,  # type: ignore[arg-type]
    )
