"""
Document identity: (namespace id, canonical path).

Stores assign their own numeric page ids, which mean nothing on a peer. The
only identity that crosses stores is the namespace plus the canonical path,
after the namespace has been translated for the receiving store.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..errors import InvariantViolation

NS_MEDIA = -2
NS_SPECIAL = -1
NS_MAIN = 0
NS_TALK = 1
NS_USER = 2
NS_USER_TALK = 3
NS_PROJECT = 4
NS_PROJECT_TALK = 5
NS_FILE = 6
NS_FILE_TALK = 7
NS_MEDIAWIKI = 8
NS_MEDIAWIKI_TALK = 9
NS_TEMPLATE = 10
NS_TEMPLATE_TALK = 11
NS_HELP = 12
NS_HELP_TALK = 13
NS_CATEGORY = 14
NS_CATEGORY_TALK = 15

# Project namespaces (4, 5) are named after each store's meta namespace.
CANONICAL_NAMESPACES: dict[int, str] = {
    NS_MEDIA: "Media",
    NS_SPECIAL: "Special",
    NS_MAIN: "",
    NS_TALK: "Talk",
    NS_USER: "User",
    NS_USER_TALK: "User_talk",
    NS_FILE: "File",
    NS_FILE_TALK: "File_talk",
    NS_MEDIAWIKI: "MediaWiki",
    NS_MEDIAWIKI_TALK: "MediaWiki_talk",
    NS_TEMPLATE: "Template",
    NS_TEMPLATE_TALK: "Template_talk",
    NS_HELP: "Help",
    NS_HELP_TALK: "Help_talk",
    NS_CATEGORY: "Category",
    NS_CATEGORY_TALK: "Category_talk",
}

_INVALID_CHARS = re.compile(r"[#<>\[\]|{}\x00-\x1f\x7f]")
_UNDERSCORES = re.compile(r"_+")


def normalize_path(text: str) -> str:
    """Convert free text to the canonical db-key form of a path.

    Spaces become underscores, runs of underscores collapse, leading and
    trailing underscores are dropped and the first character is upper-cased.

    Raises:
        InvariantViolation: If the text is empty or contains illegal characters
    """
    if not isinstance(text, str):
        raise InvariantViolation(f"Path must be a string, got {type(text).__name__}")

    key = _UNDERSCORES.sub("_", text.replace(" ", "_")).strip("_")
    if not key:
        raise InvariantViolation("Empty document path")
    if _INVALID_CHARS.search(key):
        raise InvariantViolation(f"Illegal characters in document path: {text!r}")
    return key[0].upper() + key[1:]


@dataclass(frozen=True)
class DocumentIdentity:
    """A document as seen by one store.

    Attributes:
        namespace: Namespace id on that store
        path: Canonical db-key path (see normalize_path)
    """

    namespace: int
    path: str

    def __post_init__(self) -> None:
        if isinstance(self.namespace, bool) or not isinstance(self.namespace, int):
            raise InvariantViolation(f"Namespace must be an integer, got {self.namespace!r}")
        if normalize_path(self.path) != self.path:
            raise InvariantViolation(f"Path is not in canonical form: {self.path!r}")

    @classmethod
    def from_text(cls, namespace: int, text: str) -> DocumentIdentity:
        return cls(namespace=namespace, path=normalize_path(text))

    @property
    def key(self) -> str:
        """Stable string key, used for queue partitioning and logging."""
        return f"{self.namespace}:{self.path}"

    def __str__(self) -> str:
        return self.key
