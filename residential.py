"""Keyword heuristic that keeps residential buildings and drops everything else.

Inclusion keywords match at word starts, case-insensitively, so "apartment"
matches "Apartments" but not "subapartment".  They are searched in the name,
address, provider types and OSM tag values.

Exclusion keywords match whole words (a trailing plural "s" allowed) and
only in the name, types and tag values.  A street address says nothing
about what the building is, so "2400 University Blvd" does not reject an
apartment, and "Bankside Lofts" is not a bank.  Any exclusion hit rejects
the result regardless of inclusion hits ("Residence Inn" is a hotel).
"""

import functools
import logging
import re
from typing import Iterable, List, Optional, Pattern, Tuple

from dedupe import candidate_key
from search_config import DedupeConfig, ResidentialKeywords, SEARCH_CONFIG
from search_models import Candidate, RawPlaceResult

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=32)
def _keyword_pattern(keywords: Tuple[str, ...], whole_word: bool = False) -> Optional[Pattern]:
    if not keywords:
        return None
    # Longest first so "apartment complex" wins over "apartment" in alternation.
    alternatives = "|".join(
        re.escape(k.strip()).replace(r"\ ", r"[\s_-]+")
        for k in sorted(keywords, key=len, reverse=True)
        if k.strip()
    )
    suffix = r"s?\b" if whole_word else ""
    return re.compile(rf"\b(?:{alternatives}){suffix}", re.IGNORECASE)


def searchable_text(result: RawPlaceResult) -> str:
    parts: List[str] = [result.name, result.address]
    parts.extend(result.types)
    parts.extend(v for _, v in result.tags)
    return " | ".join(p for p in parts if p)


def identity_text(result: RawPlaceResult) -> str:
    """What the place says it is: name, types and tag values, no address."""
    parts: List[str] = [result.name]
    parts.extend(result.types)
    parts.extend(v for _, v in result.tags)
    return " | ".join(p for p in parts if p)


def matched_keywords(text: str, keywords: Iterable[str], whole_word: bool = False) -> List[str]:
    pattern = _keyword_pattern(tuple(keywords), whole_word)
    if pattern is None:
        return []
    return [m.group(0).lower() for m in pattern.finditer(text)]


def is_residential(result: RawPlaceResult, keywords: ResidentialKeywords = SEARCH_CONFIG.residential) -> bool:
    if matched_keywords(identity_text(result), keywords.exclude, whole_word=True):
        return False
    return bool(matched_keywords(searchable_text(result), keywords.include))


def classify(
    results: Iterable[RawPlaceResult],
    keywords: ResidentialKeywords = SEARCH_CONFIG.residential,
    dedupe_config: DedupeConfig = SEARCH_CONFIG.dedupe,
) -> List[Candidate]:
    """Filter *results* to residential candidates, preserving order."""
    candidates = []
    rejected = 0
    for result in results:
        if is_residential(result, keywords):
            candidates.append(Candidate(result=result, dedupe_key=candidate_key(result, dedupe_config.geohash_precision)))
        else:
            rejected += 1
    logger.debug("Residential filter kept %d, rejected %d", len(candidates), rejected)
    return candidates
