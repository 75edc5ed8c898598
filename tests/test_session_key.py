import hashlib

import pytest

from vh_gateway.session_key import RotatingSessionKey


def test_same_bucket_same_key():
    keys = RotatingSessionKey("s3cret", bucket_seconds=60)
    assert keys.current_key(now=120.0) == keys.current_key(now=179.9)


def test_next_bucket_rotates():
    keys = RotatingSessionKey("s3cret", bucket_seconds=60)
    assert keys.current_key(now=179.9) != keys.current_key(now=180.0)


def test_key_derivation():
    keys = RotatingSessionKey("s3cret", bucket_seconds=60)
    expected = hashlib.sha256(b"s3cret" + b"2").hexdigest()[:16]
    assert keys.current_key(now=150.0) == expected
    assert len(expected) == 16


def test_different_secret_different_key():
    a = RotatingSessionKey("one").current_key(now=0.0)
    b = RotatingSessionKey("two").current_key(now=0.0)
    assert a != b


def test_uses_injected_clock():
    now = [600.0]
    keys = RotatingSessionKey("s3cret", bucket_seconds=60, clock=lambda: now[0])
    first = keys.current_key()
    assert keys.seconds_remaining() == 60.0
    now[0] = 630.0
    assert keys.current_key() == first
    assert keys.seconds_remaining() == 30.0
    now[0] = 660.0
    assert keys.current_key() != first


@pytest.mark.parametrize("secret,bucket", [("", 60), ("x", 0)])
def test_rejects_bad_config(secret, bucket):
    with pytest.raises(ValueError):
        RotatingSessionKey(secret, bucket_seconds=bucket)
