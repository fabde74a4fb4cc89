from __future__ import annotations

import re

# Offline entity spotting for queries and the heuristic extractor:
# - multi-word Capitalized sequences: "Acme Corp", "New York"
# - all-caps acronyms: "NASA", "EU-US"
_ENTITY_RE = re.compile(
    r"\b(?:[A-Z]{2,}(?:-[A-Z]{2,})*|[A-Z][a-z]+(?:\s+[A-Z][a-z]+){0,4})\b"
)

# Titlecase function words that start sentences but are never entities alone.
_STOP = set(
    """
    A About After An And Are As At Be Before But By Can Could Describe Did Do Does Explain Find For From Give
    Had Has Have He Her His How I If In Into Is It Its List Me My No Not Of On Or Our Show She Should So Tell
    That The Their There These They This Those To Was We Were What When Where Which Who Why Will With Would
    You Your
    """.split()
)
_STOP_LOWER = {s.lower() for s in _STOP}


def norm_entity(name: str) -> str:
    # Merge key: case-insensitive, whitespace-insensitive.
    return re.sub(r"\s+", " ", str(name).strip()).lower()


def norm_type(value: str) -> str:
    """Normalize entity and relationship types: "Related To" -> "related_to"."""
    return re.sub(r"[\s\-]+", "_", str(value).strip()).lower()


def extract_entities(
    text: str,
    *,
    min_chars: int = 3,
    max_per_chunk: int = 25,
) -> dict[str, tuple[str, int]]:
    """Return {name_norm: (display_name, count_in_text)}.

    The first spelling seen is kept as the display name.
    """
    counts: dict[str, tuple[str, int]] = {}
    for m in _ENTITY_RE.finditer(text):
        words = m.group(0).split()
        # "Does Acme Corp" -> "Acme Corp"
        while len(words) > 1 and words[0] in _STOP:
            words.pop(0)
        raw = " ".join(words)
        if len(raw) < min_chars or raw in _STOP:
            continue

        n = norm_entity(raw)
        if n in _STOP_LOWER:
            continue

        prev = counts.get(n)
        counts[n] = (raw, 1) if prev is None else (prev[0], prev[1] + 1)

        if len(counts) >= max_per_chunk:
            break

    return counts


def extract_query_terms(text: str, *, max_terms: int = 8) -> list[str]:
    """Fallback term extraction when a query names no entity."""
    out: list[str] = []
    for t in re.findall(r"[A-Za-z0-9_]+", text.lower()):
        if len(t) < 3 or t in _STOP_LOWER or t in out:
            continue
        out.append(t)
        if len(out) >= max_terms:
            break
    return out
