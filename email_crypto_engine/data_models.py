# ============================================================================
# email_crypto_engine/data_models.py
# ============================================================================
"""
Typed data models for the email crypto engine.
Covers key material descriptions, per-operation results, the path-indexed
MIME document arena and the outgoing composed message.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email import encoders
from email.utils import getaddresses
from enum import Enum, IntEnum, IntFlag
from typing import Any, Dict, Iterator, List, Optional, Tuple


CRLF = b"\r\n"


class KeyType(Enum):
    """Key material available locally."""
    PUBLIC = "public"
    KEYPAIR = "keypair"


class KeyCapability(Enum):
    """Capabilities a subkey may carry."""
    SIGN = "sign"
    ENCRYPT = "encrypt"


class SignatureStatus(Enum):
    """Signature verification outcome."""
    VALID = "valid"
    INVALID = "invalid"
    KEY_NOT_FOUND = "key_not_found"
    ERROR = "error"


class DecryptionStatus(Enum):
    """Decryption outcome of a message part."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIALLY_ENCRYPTED = "partially_encrypted"


class SignMode(IntEnum):
    """Caller requested signing mode."""
    BODY = 1
    SEPARATE = 2
    MIME = 4


class EncryptMode(IntFlag):
    """Caller requested encryption mode flags."""
    BODY = 1
    MIME = 2
    SIGN = 4


class BackendSignMode(Enum):
    """Signature format produced by a backend."""
    NORMAL = "normal"
    CLEAR = "clear"
    DETACHED = "detached"


class Action(Enum):
    """Host request the document walk belongs to."""
    SHOW = "show"
    PREVIEW = "preview"
    PRINT = "print"
    COMPOSE = "compose"
    OTHER = "other"


DISPLAY_ACTIONS = (Action.SHOW, Action.PREVIEW, Action.PRINT)


# ============================================================================
# Keys
# ============================================================================

@dataclass
class UserId:
    """User identity bound to a key."""
    name: str = ""
    email: str = ""
    valid: bool = True


@dataclass
class SubKey:
    """Subkey with its capabilities and validity window."""
    id: str
    fingerprint: str = ""
    can_sign: bool = False
    can_encrypt: bool = False
    created: int = 0  # epoch seconds
    expires: Optional[int] = None
    revoked: bool = False
    has_private: bool = False

    def has_capability(self, capability: KeyCapability) -> bool:
        if capability is KeyCapability.SIGN:
            return self.can_sign
        return self.can_encrypt

    def is_expired(self, now: Optional[float] = None) -> bool:
        if not self.expires:
            return False
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        return self.expires <= now

    @property
    def usable(self) -> bool:
        return not self.revoked and not self.is_expired()


@dataclass
class Key:
    """A PGP key or S/MIME certificate as reported by a backend."""
    id: str
    name: str = ""
    users: List[UserId] = field(default_factory=list)
    subkeys: List[SubKey] = field(default_factory=list)
    password: Optional[str] = None

    @property
    def key_type(self) -> KeyType:
        if any(subkey.has_private for subkey in self.subkeys):
            return KeyType.KEYPAIR
        return KeyType.PUBLIC

    def find_subkey(self, email: str, capability: KeyCapability) -> Optional[SubKey]:
        """Return the first usable subkey with the capability for this address."""
        email = (email or "").strip().lower()
        if not any(user.valid and user.email.lower() == email for user in self.users):
            return None

        for subkey in self.subkeys:
            if subkey.usable and subkey.has_capability(capability):
                return subkey
        return None

    @staticmethod
    def format_id(key_id: str) -> str:
        """Short (8 hex digit) representation of a key id."""
        return key_id[-8:].upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.key_type.value,
            "users": [{"name": u.name, "email": u.email, "valid": u.valid} for u in self.users],
            "subkeys": [
                {
                    "id": s.id,
                    "fingerprint": s.fingerprint,
                    "can_sign": s.can_sign,
                    "can_encrypt": s.can_encrypt,
                    "created": s.created,
                    "expires": s.expires,
                    "revoked": s.revoked,
                    "has_private": s.has_private,
                }
                for s in self.subkeys
            ],
        }


# ============================================================================
# Operation results
# ============================================================================

@dataclass
class Signature:
    """Signature verification result."""
    status: SignatureStatus
    key_id: Optional[str] = None
    fingerprint: Optional[str] = None
    name: Optional[str] = None
    partial: bool = False  # only a suffix of the text was signed
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.status is SignatureStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "key_id": self.key_id,
            "fingerprint": self.fingerprint,
            "name": self.name,
            "partial": self.partial,
            "error": self.error,
        }


@dataclass
class DecryptionResult:
    """Decryption status of a message part."""
    status: DecryptionStatus
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.status is not DecryptionStatus.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class ImportResult:
    """Key import statistics."""
    public_imported: int = 0
    private_imported: int = 0
    public_unchanged: int = 0
    private_unchanged: int = 0
    fingerprints: List[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.public_imported + self.private_imported

    @property
    def unchanged(self) -> int:
        return self.public_unchanged + self.private_unchanged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "public_imported": self.public_imported,
            "private_imported": self.private_imported,
            "public_unchanged": self.public_unchanged,
            "private_unchanged": self.private_unchanged,
            "imported": self.imported,
            "unchanged": self.unchanged,
        }


# ============================================================================
# MIME document arena
# ============================================================================

@dataclass
class MimeNode:
    """One part of a parsed MIME document, addressed by its dotted path."""
    mime_id: str = ""
    mimetype: str = "text/plain"
    headers: Dict[str, str] = field(default_factory=dict)  # lower-case names
    ctype_parameters: Dict[str, str] = field(default_factory=dict)
    disposition: Optional[str] = None
    filename: Optional[str] = None
    encoding: str = "7bit"
    size: int = 0
    body: Optional[bytes] = None
    body_modified: bool = False  # host must not serve this body from cache
    need_decryption: bool = False
    encrypted_body: Optional[bytes] = None  # ciphertext of a need_decryption attachment
    part_type: Optional[str] = None  # "content" for renderable leaves
    parts: List["MimeNode"] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.mimetype.startswith("multipart/")

    def iter_nodes(self) -> Iterator["MimeNode"]:
        """Depth-first iteration over this node and its descendants."""
        yield self
        for part in self.parts:
            yield from part.iter_nodes()


@dataclass
class MimeDocument:
    """
    A parsed message: the node tree plus a flat path -> node index.

    The index must stay consistent with the tree; splicing uses
    remove_subtree / register / replace to keep it so.
    """
    root: MimeNode
    uid: Optional[str] = None
    sender: Optional[str] = None
    fetcher: Optional[Any] = None  # IBodyFetcher
    mime_parts: Dict[str, MimeNode] = field(default_factory=dict)
    content_parts: List[MimeNode] = field(default_factory=list)

    def __post_init__(self):
        if not self.mime_parts:
            for node in self.root.iter_nodes():
                self.register(node)

    def register(self, node: MimeNode) -> None:
        self.mime_parts[node.mime_id] = node

    def get(self, path: str) -> Optional[MimeNode]:
        return self.mime_parts.get(path)

    def remove_subtree(self, path: str) -> List[str]:
        """Drop the index entries of a path and all of its descendants."""
        removed = [
            idx for idx in self.mime_parts
            if not path or idx == path or idx.startswith(path + ".")
        ]
        for idx in removed:
            del self.mime_parts[idx]
        return removed

    @staticmethod
    def parent_path(path: str) -> Optional[str]:
        if not path:
            return None
        if "." in path:
            return path.rsplit(".", 1)[0]
        return ""

    def parent_of(self, path: str) -> Optional[MimeNode]:
        parent = self.parent_path(path)
        if parent is None:
            return None
        return self.mime_parts.get(parent)

    def replace(self, old: MimeNode, new: MimeNode, path: Optional[str] = None) -> None:
        """Put ``new`` where ``old`` sits in the tree."""
        path = old.mime_id if path is None else path
        if old is self.root:
            self.root = new
            return

        parent = self.parent_of(path)
        if parent is None:
            return
        for idx, part in enumerate(parent.parts):
            if part is old:
                parent.parts[idx] = new
                return

    def get_part_body(self, node: MimeNode) -> Optional[bytes]:
        """Return the in-memory body, fetching it from the host when needed."""
        if node.body is not None:
            return node.body
        if self.fetcher is not None:
            return self.fetcher.fetch_part(self.uid, node)
        return None


@dataclass
class WalkContext:
    """
    State of one document walk.

    ``got_content`` backs the compose-time decryption-oracle guard and must
    never outlive the walk it was created for.
    """
    action: Action = Action.SHOW
    got_content: bool = False
    sender: Optional[str] = None
    signatures: Dict[str, Signature] = field(default_factory=dict)
    decryptions: Dict[str, DecryptionResult] = field(default_factory=dict)
    encrypted_parts: List[str] = field(default_factory=list)

    @property
    def is_compose(self) -> bool:
        return self.action is Action.COMPOSE

    @property
    def is_display(self) -> bool:
        return self.action in DISPLAY_ACTIONS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "sender": self.sender,
            "signatures": {k: v.to_dict() for k, v in self.signatures.items()},
            "decryptions": {k: v.to_dict() for k, v in self.decryptions.items()},
            "encrypted_parts": list(self.encrypted_parts),
        }


@dataclass
class PartOutcome:
    """Result of classifying one node."""
    node: MimeNode
    mimetype: str
    abort: bool = False  # suppress the host's default attachment handling


# ============================================================================
# Outgoing messages
# ============================================================================

@dataclass
class MessageAttachment:
    """Attachment of a composed message."""
    data: bytes
    content_type: str = "application/octet-stream"
    filename: str = "attachment"
    encoding: str = "base64"


@dataclass
class ComposedMessage:
    """
    An outgoing message before delivery.

    Top-level headers live in ``headers``; the body entity is built from the
    text/html bodies and attachments. Once a PGP/MIME container has been
    applied the entity is replaced by ``container``.
    """
    headers: Dict[str, str] = field(default_factory=dict)
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    text_charset: str = "UTF-8"
    format_flowed: bool = False
    attachments: List[MessageAttachment] = field(default_factory=list)
    container: Optional[bytes] = None
    container_type: Optional[str] = None
    _orig_body: Optional[bytes] = field(default=None, repr=False)

    def get_header(self, name: str) -> str:
        for key, value in self.headers.items():
            if key.lower() == name.lower():
                return value
        return ""

    def from_address(self) -> Optional[str]:
        addresses = [addr for _, addr in getaddresses([self.get_header("From")]) if addr]
        return addresses[0] if addresses else None

    def recipients(self) -> List[str]:
        values = [self.get_header(name) for name in ("To", "Cc", "Bcc")]
        return [addr for _, addr in getaddresses([v for v in values if v]) if addr]

    def is_multipart(self) -> bool:
        return bool(self.attachments) or self.html_body is not None

    def set_text_body(self, text: str) -> None:
        self.text_body = text
        self._orig_body = None

    def add_attachment(self, data: bytes, content_type: str, filename: str,
                       encoding: str = "base64") -> None:
        self.attachments.append(MessageAttachment(data, content_type, filename, encoding))
        self._orig_body = None

    def _text_part(self) -> MIMEText:
        part = MIMEText(self.text_body or "", "plain", self.text_charset)
        if self.format_flowed:
            part.set_param("format", "flowed")
        return part

    def _build_entity(self):
        if not self.is_multipart():
            return self._text_part()

        if self.html_body is not None:
            body = MIMEMultipart("alternative")
            body.attach(self._text_part())
            body.attach(MIMEText(self.html_body, "html", self.text_charset))
        else:
            body = self._text_part()

        if not self.attachments:
            return body

        entity = MIMEMultipart("mixed")
        entity.attach(body)
        for attachment in self.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            part = MIMEBase(maintype, subtype or "octet-stream", name=attachment.filename)
            if attachment.encoding == "base64":
                part.set_payload(attachment.data)
                encoders.encode_base64(part)
            else:
                # the generator only writes str payloads
                part.set_payload(attachment.data.decode("ascii", "surrogateescape"))
                encoders.encode_7or8bit(part)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            entity.attach(part)
        return entity

    def get_orig_body(self) -> bytes:
        """Canonical CRLF serialization of the body entity, content headers included."""
        if self._orig_body is None:
            entity = self._build_entity()
            for part in entity.walk():
                del part["MIME-Version"]
            self._orig_body = entity.as_bytes(policy=policy.SMTP)
        return self._orig_body

    @staticmethod
    def _boundary() -> str:
        return "=_enig" + uuid.uuid4().hex

    def add_pgp_signature(self, signature: bytes, micalg: str = "sha256") -> None:
        """Wrap the body entity and a detached signature into multipart/signed."""
        boundary = self._boundary()
        marker = b"--" + boundary.encode("ascii")
        self.container_type = (
            f'multipart/signed; micalg="pgp-{micalg.lower()}";'
            f' protocol="application/pgp-signature"; boundary="{boundary}"'
        )
        self.container = b"".join([
            b"This is an OpenPGP/MIME signed message (RFC 4880 and 3156)" + CRLF,
            marker + CRLF,
            self.get_orig_body(), CRLF,
            marker + CRLF,
            b'Content-Type: application/pgp-signature; name="signature.asc"' + CRLF,
            b"Content-Description: OpenPGP digital signature" + CRLF,
            b'Content-Disposition: attachment; filename="signature.asc"' + CRLF,
            CRLF,
            signature.rstrip(b"\r\n"), CRLF,
            marker + b"--" + CRLF,
        ])

    def set_pgp_encrypted_body(self, encrypted: bytes) -> None:
        """Replace the body entity with a multipart/encrypted container."""
        boundary = self._boundary()
        marker = b"--" + boundary.encode("ascii")
        self.container_type = (
            f'multipart/encrypted; protocol="application/pgp-encrypted"; boundary="{boundary}"'
        )
        self.container = b"".join([
            b"This is an OpenPGP/MIME encrypted message (RFC 4880 and 3156)" + CRLF,
            marker + CRLF,
            b"Content-Type: application/pgp-encrypted" + CRLF,
            b"Content-Description: PGP/MIME version identification" + CRLF,
            CRLF,
            b"Version: 1" + CRLF,
            CRLF,
            marker + CRLF,
            b'Content-Type: application/octet-stream; name="encrypted.asc"' + CRLF,
            b"Content-Description: OpenPGP encrypted message" + CRLF,
            b'Content-Disposition: inline; filename="encrypted.asc"' + CRLF,
            CRLF,
            encrypted.rstrip(b"\r\n"), CRLF,
            marker + b"--" + CRLF,
        ])

    def as_bytes(self) -> bytes:
        """Full RFC 5322 message ready for delivery."""
        head = b"".join(
            policy.SMTP.fold_binary(name, value)
            for name, value in self.headers.items()
            if name.lower() not in ("bcc", "content-type", "content-transfer-encoding", "mime-version")
        )
        head += b"MIME-Version: 1.0" + CRLF

        if self.container is not None:
            return head + b"Content-Type: " + self.container_type.encode("ascii") + CRLF + CRLF + self.container
        return head + self.get_orig_body()


def split_address(address: str) -> Tuple[str, str]:
    """Split an address into local part and domain."""
    local, _, domain = address.rpartition("@")
    return local, domain
