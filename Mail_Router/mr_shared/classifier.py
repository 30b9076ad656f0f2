"""
Recipient classifier: maps a raw address to an identity stream.

The grammar is an ordered table; the first rule whose pattern matches the
local part decides the stream.

    #  rule             local part                      result
    0  shape            outside [a-z0-9._-]+            unknown (malformed)
    1  dot pair         seg1 "." seg2 ["_"]             digit gate on seg2:
                                                          digits  -> nft-collection
                                                          letters -> social-pair
                                                          mixed   -> unknown (mixed-alnum)
    2  agent marker     name "_"                        agent
    3  flat name        anything else in the charset    sovereign (strict format check)

A dot pair whose collection is not configured is rejected as
unknown-collection; it never falls through to the social-pair branch.
"""

import re
from typing import Callable, Optional

from Mail_Router.mr_shared import config
from Mail_Router.mr_shared.types import Classification


_SHAPE = re.compile(r"^[a-z0-9._-]+$")
_DOT_PAIR = re.compile(r"^([a-z0-9-]+)\.([a-z0-9]+)(" + re.escape(config.AGENT_MARKER) + r"?)$")
_AGENT = re.compile(r"^([a-z0-9](?:[a-z0-9-]*[a-z0-9])?)" + re.escape(config.AGENT_MARKER) + r"$")
_SOVEREIGN_STRICT = re.compile(r"^[a-z0-9]+(?:[.-][a-z0-9]+)*$")
SOVEREIGN_MIN_LENGTH = 3


def _unknown(local: str, reason: str) -> Classification:
    return Classification(stream="unknown", local_part=local, reason=reason)


def _dot_pair(local: str, match: re.Match, collections: dict) -> Classification:
    seg1, seg2, marker = match.groups()
    has_marker = bool(marker)

    if seg2.isdigit():
        result = Classification(
            stream="nft-collection",
            local_part=local,
            identity_name=local,
            collection_name=seg1,
            token_id=seg2,
            agent_marker=has_marker,
        )
        if seg1 not in collections:
            result.reason = "unknown-collection"
        return result

    if seg2.isalpha():
        return Classification(
            stream="social-pair",
            local_part=local,
            identity_name=local,
            social_pair=(seg1, seg2),
            agent_marker=has_marker,
        )

    return _unknown(local, "mixed-alnum")


def _agent(local: str, match: re.Match, collections: dict) -> Classification:
    return Classification(
        stream="agent",
        local_part=local,
        identity_name=local,
        agent_marker=True,
    )


def _flat(local: str, match: re.Match, collections: dict) -> Classification:
    if local.endswith(config.AGENT_MARKER):
        # a trailing marker that failed the agent rule is not a flat name
        return _unknown(local, "invalid-agent-name")

    result = Classification(stream="sovereign", local_part=local, identity_name=local)
    if (
        len(local) < SOVEREIGN_MIN_LENGTH
        or config.AGENT_MARKER in local
        or not _SOVEREIGN_STRICT.match(local)
    ):
        result.reason = "invalid-format"
    return result


RULES: list[tuple[str, re.Pattern, Callable[[str, re.Match, dict], Classification]]] = [
    ("dot-pair", _DOT_PAIR, _dot_pair),
    ("agent-marker", _AGENT, _agent),
    ("flat-name", _SHAPE, _flat),
]


def split_address(address: str) -> tuple[str, Optional[str]]:
    raw = (address or "").strip().lower()
    if "@" not in raw:
        return raw, None
    local, _, domain = raw.rpartition("@")
    return local, domain


def classify(address: str, collections: Optional[dict] = None) -> Classification:
    """Classify ``address`` (bare local part or ``local@domain``). Never raises."""
    if collections is None:
        collections = config.NFT_COLLECTIONS

    local, domain = split_address(address)

    if domain is not None and domain != config.MAIL_DOMAIN:
        return _unknown(local, "foreign-domain")
    if not local or not _SHAPE.match(local):
        return _unknown(local, "malformed")

    for _name, pattern, build in RULES:
        match = pattern.match(local)
        if match:
            return build(local, match, collections)

    return _unknown(local, "malformed")


# (input, expected stream, expected reason)
EXAMPLES = [
    ("alice",                   "sovereign",      None),
    ("Alice@nftmail.box",       "sovereign",      None),
    ("mail.box-relay",          "sovereign",      None),
    ("ab",                      "sovereign",      "invalid-format"),
    ("al--ice",                 "sovereign",      "invalid-format"),
    ("a.b.c",                   "sovereign",      None),
    ("ab_",                     "agent",          None),
    ("scout-bot_",              "agent",          None),
    ("-bot_",                   "unknown",        "invalid-agent-name"),
    ("punks.7804",              "nft-collection", None),
    ("punks.7804_",             "nft-collection", None),
    ("bob.42",                  "nft-collection", "unknown-collection"),
    ("alice.bob",               "social-pair",    None),
    ("alice.b0b",               "unknown",        "mixed-alnum"),
    ("alice@gmail.com",         "unknown",        "foreign-domain"),
    ("al!ce",                   "unknown",        "malformed"),
    ("",                        "unknown",        "malformed"),
]
