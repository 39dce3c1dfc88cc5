from __future__ import annotations

from typing import Iterable, List, Optional

from callaudit.core.models import Segment

AGENT = "agent"
CLIENT = "client"


def next_speaker(segment: Segment, prior: Optional[str]) -> str:
    """Resolve the speaker of one segment.

    An explicit tag on the segment always wins. Untagged segments fall back to
    a two-party alternation: the first one is the client, each later one is
    the opposite of the previously resolved speaker.
    """
    if segment.speaker:
        return segment.speaker
    if prior == CLIENT:
        return AGENT
    return CLIENT


def attribute_speakers(segments: Iterable[Segment]) -> List[str]:
    speakers: List[str] = []
    prior: Optional[str] = None
    for seg in segments:
        prior = next_speaker(seg, prior)
        speakers.append(prior)
    return speakers
