"""
AT URI handling.

A record is addressed as ``at://<repo did>/<collection>/<rkey>``. The URI is
the primary key of every indexed row and is stable across edits.
"""

from typing import Optional

from .errors import InvalidRecordError
from .nsid import Collection


AT_SCHEME = "at://"


class AtUri:
    """Parsed (host, collection, rkey) triple"""

    __slots__ = ('host', 'collection', 'rkey')

    def __init__(self, host: str, collection: str = '', rkey: str = ''):
        self.host = host
        self.collection = collection
        self.rkey = rkey

    @classmethod
    def parse(cls, uri: str) -> "AtUri":
        """Parse an at:// URI, raising InvalidRecordError when malformed"""
        if not isinstance(uri, str) or not uri.startswith(AT_SCHEME):
            raise InvalidRecordError(f"Invalid AT URI: {uri!r}", uri if isinstance(uri, str) else None)

        # Strip query/fragment, they never address a different record
        path = uri[len(AT_SCHEME):].split('#', 1)[0].split('?', 1)[0]
        parts = path.split('/')
        if not parts[0] or len(parts) > 3 or any(not p for p in parts[1:]):
            raise InvalidRecordError(f"Invalid AT URI: {uri!r}", uri)

        host = parts[0]
        collection = parts[1] if len(parts) > 1 else ''
        rkey = parts[2] if len(parts) > 2 else ''
        return cls(host, collection, rkey)

    @classmethod
    def make(cls, host: str, collection: str, rkey: str) -> "AtUri":
        return cls(host, str(collection), rkey)

    def __str__(self) -> str:
        uri = f"{AT_SCHEME}{self.host}"
        if self.collection:
            uri += f"/{self.collection}"
            if self.rkey:
                uri += f"/{self.rkey}"
        return uri

    def __repr__(self) -> str:
        return f"AtUri({str(self)!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, AtUri):
            return str(self) == str(other)
        if isinstance(other, str):
            return str(self) == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(str(self))


def uri_to_did(uri: str) -> str:
    """Repo DID of a record URI"""
    return AtUri.parse(uri).host


def safe_collection_of(uri: Optional[str]) -> Optional[str]:
    """Collection of a URI, or None when the URI does not parse"""
    if not uri:
        return None
    try:
        return AtUri.parse(uri).collection
    except InvalidRecordError:
        return None


def post_uri_to_threadgate_uri(post_uri: str) -> str:
    """Thread gates share creator and rkey with the post they gate"""
    parsed = AtUri.parse(post_uri)
    return str(AtUri.make(parsed.host, Collection.THREAD_GATE, parsed.rkey))


def post_uri_to_postgate_uri(post_uri: str) -> str:
    """Post gates share creator and rkey with the post they gate"""
    parsed = AtUri.parse(post_uri)
    return str(AtUri.make(parsed.host, Collection.POST_GATE, parsed.rkey))
