import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, ROOT_DIR)

from email_crypto_engine.core.boundary_splitter import find_boundary, split_signed_body, strip_non_ascii
from email_crypto_engine.data_models import MimeNode

BOUNDARY = "=_sig8f2a"

SIGNED_PART = (
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"Content-Transfer-Encoding: 7bit\r\n"
    b"\r\n"
    b"Signed text.\r\n"
)

SIGNATURE = (
    b"-----BEGIN PGP SIGNATURE-----\r\n"
    b"\r\n"
    b"iQEzBAEBCAAdFiEE\r\n"
    b"-----END PGP SIGNATURE-----"
)


def build_body(boundary=BOUNDARY):
    marker = b"--" + boundary.encode()
    return (
        b"This is an OpenPGP/MIME signed message\r\n"
        + marker + b"\r\n"
        + SIGNED_PART + b"\r\n"
        + marker + b"\r\n"
        + b"Content-Type: application/pgp-signature; name=\"signature.asc\"\r\n"
        + b"Content-Disposition: attachment; filename=\"signature.asc\"\r\n"
        + b"\r\n"
        + SIGNATURE + b"\r\n"
        + marker + b"--\r\n"
    )


def test_split_recovers_exact_bytes():
    signed, sig = split_signed_body(build_body(), BOUNDARY)
    assert signed == SIGNED_PART
    assert sig == SIGNATURE


def test_missing_boundary_returns_none():
    assert split_signed_body(build_body(), "other") is None
    assert split_signed_body(b"", BOUNDARY) is None
    assert split_signed_body(build_body(), None) is None


def test_single_boundary_returns_none():
    body = b"--" + BOUNDARY.encode() + b"\r\n" + SIGNED_PART
    assert split_signed_body(body, BOUNDARY) is None


def test_find_boundary_prefers_parameters():
    node = MimeNode(
        mimetype="multipart/signed",
        ctype_parameters={"boundary": BOUNDARY},
        headers={"content-type": 'multipart/signed; boundary="ignored"'},
    )
    assert find_boundary(node) == BOUNDARY


def test_find_boundary_from_raw_header():
    node = MimeNode(
        mimetype="multipart/signed",
        headers={"content-type": 'multipart/signed; micalg=pgp-sha256; Boundary="' + BOUNDARY + '"'},
    )
    assert find_boundary(node) == BOUNDARY


def test_find_boundary_unquoted():
    node = MimeNode(headers={"content-type": "multipart/signed; boundary=abc.123:x"})
    assert find_boundary(node) == "abc.123:x"


def test_strip_non_ascii():
    assert strip_non_ascii("abéc".encode("utf-8")) == b"abc"
    assert strip_non_ascii(None) == b""
