"""Recommendation mapping from gap domains to micro-PD modules."""

from typing import Dict, Iterable, List, Mapping, Sequence

from competency_backend.assessments.competency.competency_config import DOMAIN_MICRO_PD_MAP


def recommend_micro_pds(
    gap_domains: Iterable[str],
    mapping: Mapping[str, Sequence[str]] = DOMAIN_MICRO_PD_MAP
) -> List[str]:
    """
    Map gap domains to recommended micro-PD ids.

    Ids are deduplicated, keeping the order in which they are first reached.
    Domains without a mapping contribute nothing.
    """
    seen: Dict[str, None] = {}
    for domain in gap_domains:
        for micro_pd in mapping.get(domain, ()):
            seen.setdefault(micro_pd, None)
    return list(seen)
