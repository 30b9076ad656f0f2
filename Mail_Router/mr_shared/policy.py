"""
Confidentiality policy for an accepted inbound message.

Decision tree:
    recipient key registered                      -> encrypted
    no key + agent stream                         -> warning
    no key + privacy private / hard-privacy       -> warning
    no key + exposed human stream                 -> cleartext
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class DeliveryContext:
    """What the router knows about a recipient at arrival time."""
    stream:        str
    privacy_state: str
    has_key:       bool
    label:         str = ""


class PolicySelector:
    """Selects how an envelope is written for the given recipient context."""

    def select(self, ctx: DeliveryContext) -> str:
        """Return 'encrypted', 'warning' or 'cleartext'."""
        if ctx.has_key:
            return "encrypted"

        # Agents never receive cleartext
        if ctx.stream == "agent":
            return "warning"

        if ctx.privacy_state != "exposed":
            return "warning"
        return "cleartext"

    def should_forward(self, ctx: DeliveryContext, kind: str) -> bool:
        """True when the cleartext copy may also go to the fallback provider."""
        return kind == "cleartext" and ctx.stream == "sovereign"


def default_privacy(stream: str, recorded: Optional[str]) -> str:
    if recorded is not None:
        return recorded
    return "private" if stream == "agent" else "exposed"
