"""Topic names, topic filters and wildcard matching.

Topics are '/'-separated segments. Subscription filters may use two
wildcards:

- '+' matches exactly one segment
- '#' matches zero or more trailing segments and must be the last segment

Topics whose first segment starts with '$' are reserved for the broker and
are not matched by a filter starting with a wildcard unless the caller turns
that policy off.
"""
from typing import List

SEPARATOR = '/'
SINGLE_LEVEL = '+'
MULTI_LEVEL = '#'
RESERVED_PREFIX = '$'


def split_topic(topic: str) -> List[str]:
    return topic.split(SEPARATOR)


def validate_topic_filter(topic: str) -> bool:
    """
    Validate topic filter according to MQTT rules:
    - Single-level wildcard (+) can be used at any level but must occupy entire level
    - Multi-level wildcard (#) must be the last segment
    - Neither wildcard can be used within a level
    """
    if not topic or not isinstance(topic, str):
        return False

    segments = split_topic(topic)

    for i, segment in enumerate(segments):
        # Empty segment (double slash) is invalid
        if not segment:
            return False

        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            return False

        if MULTI_LEVEL in segment:
            if segment != MULTI_LEVEL or i != len(segments) - 1:
                return False

    return True


def validate_topic_name(topic: str) -> bool:
    """Validate a topic used for publishing: no wildcards, no empty segments"""
    if not topic or not isinstance(topic, str):
        return False
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        return False
    return all(split_topic(topic))


def is_reserved(topic: str) -> bool:
    return topic.startswith(RESERVED_PREFIX)


def matches(pattern: str, topic: str, exclude_reserved: bool = True) -> bool:
    """Return True if ``topic`` is matched by the subscription ``pattern``.

    The pattern is assumed to be valid; malformed filters are rejected when
    subscribing, not here.
    """
    pattern_segments = split_topic(pattern)
    topic_segments = split_topic(topic)

    if exclude_reserved and is_reserved(topic) and pattern_segments[0] in (SINGLE_LEVEL, MULTI_LEVEL):
        return False

    for i, segment in enumerate(pattern_segments):
        if segment == MULTI_LEVEL:
            # 'a/#' also matches 'a' itself
            return True
        if i >= len(topic_segments):
            return False
        if segment == SINGLE_LEVEL:
            continue
        if segment != topic_segments[i]:
            return False

    return len(pattern_segments) == len(topic_segments)
