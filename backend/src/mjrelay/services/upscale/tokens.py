"""Candidate custom_id encodings for the upscale button.

Midjourney identifies the "U1".."U4" buttons by a custom_id built from the
operation, the variant index and the job hash. The grammar is undocumented and
has changed between bot revisions, so the executor tries an ordered list of
encodings until the bot accepts one. The list is configuration
(UPSCALE_TOKEN_FORMATS); each entry is a ``str.format`` template with
``{index}`` and ``{hash}`` fields.
"""

from dataclasses import dataclass
from typing import Callable, Iterable

CandidateToken = Callable[[int, str], str]

DEFAULT_TOKEN_FORMATS = (
    "MJ::JOB::upsample::{index}::{hash}",
    "MJ::JOB::upsample::{index}::{hash}::SOLO",
    "MJ::JOB::upsample_v5::{index}::{hash}",
)


@dataclass(frozen=True)
class TokenTemplate:
    """Pure (index, hash) -> custom_id encoder built from a format template."""

    template: str

    def __call__(self, index: int, content_hash: str) -> str:
        return self.template.format(index=index, hash=content_hash)

    def __str__(self) -> str:
        return self.template


def build_candidates(templates: Iterable[str]) -> list[CandidateToken]:
    """Turn configured templates into encoders, preserving order and dropping duplicates."""
    seen: set[str] = set()
    candidates: list[CandidateToken] = []
    for template in templates:
        if template in seen:
            continue
        seen.add(template)
        candidates.append(TokenTemplate(template))
    return candidates
