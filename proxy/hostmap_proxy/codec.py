"""Hostname <-> DNS label encoding used for routing and link rewriting."""

import re

from .errors import MalformedHostLabel

_RE_LABEL = re.compile(r"[A-Za-z0-9-]+")


class HostnameCodec:
    """Fold a dotted hostname into a single label and back.

    ``www.example.com`` encodes to ``www-example-com``. Decoding treats
    ``--`` as an escaped literal hyphen, so ``my--site-com`` decodes to
    ``my-site.com``. Encoding does not produce that escape, which means
    hosts with a literal hyphen do not round-trip.
    """

    def encode(self, origin: str) -> str:
        return origin.replace(".", "-")

    def decode(self, label: str) -> str:
        if not label or not _RE_LABEL.fullmatch(label):
            raise MalformedHostLabel(f"not a host label: {label!r}")
        # str.split scans left to right without overlap, so each "--"
        # becomes a separator and survives the dot pass.
        return "-".join(part.replace("-", ".") for part in label.split("--"))
