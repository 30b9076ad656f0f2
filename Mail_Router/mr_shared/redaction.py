import re
from typing import Optional

from Mail_Router.mr_shared import config


class SensitiveContentDetector:
    """Flags authentication material before it reaches a public audit log.

    Rules run in order and the first hit names the reason:
    ``auth-sender`` (known security-notification sender), ``otp-code``
    (auth keyword plus a 4-8 digit token), ``auth-keyword`` (keyword alone).
    """

    def __init__(
        self,
        sender_patterns: Optional[list[str]] = None,
        keywords: Optional[list[str]] = None,
    ):
        patterns = sender_patterns if sender_patterns is not None else config.AUTH_SENDER_PATTERNS
        self.sender_patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.keywords = [k.lower() for k in (keywords if keywords is not None else config.AUTH_KEYWORDS)]
        self.code_pattern = re.compile(config.OTP_CODE_PATTERN)

    def _sender_hit(self, sender: str) -> bool:
        address = sender.strip().lower()
        # "Name <addr@host>" form
        if "<" in address and address.endswith(">"):
            address = address[address.rindex("<") + 1:-1]
        return any(p.search(address) for p in self.sender_patterns)

    def _keyword_hit(self, text: str) -> bool:
        for keyword in self.keywords:
            if re.search(r"(?<![a-z0-9])" + re.escape(keyword) + r"(?![a-z0-9])", text):
                return True
        return False

    def scan(self, sender: str, subject: str, body: str) -> tuple[bool, Optional[str]]:
        """Return ``(redact, reason)``."""
        if self._sender_hit(sender):
            return True, "auth-sender"

        text = f"{subject}\n{body}".lower()
        if not self._keyword_hit(text):
            return False, None
        if self.code_pattern.search(text):
            return True, "otp-code"
        return True, "auth-keyword"
