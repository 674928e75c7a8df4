"""Frame codec tests: padding, truncation, decode failures."""
import pytest

from relay_frame import MSG_SIZE, DecodeError, encode, decode


def test_frame_width():
    assert MSG_SIZE == 32
    for text in ['', 'hi', 'A' * 40, 'é' * 20]:
        assert len(encode(text)) == MSG_SIZE


@pytest.mark.parametrize('text', ['', 'ping', 'hello world', 'A' * 32, 'olá, mundo', '日本語'])
def test_roundtrip(text):
    assert decode(encode(text)) == text


def test_padding():
    frame = encode('hi')
    assert frame == b'hi' + b'\0' * 30
    assert decode(frame) == 'hi'


def test_truncation():
    assert decode(encode('A' * 40)) == 'A' * 32


def test_truncation_on_char_boundary():
    # 17 two-byte chars = 34 bytes, cut to exactly 16 chars
    assert decode(encode('é' * 17)) == 'é' * 16


def test_truncation_mid_char_fails_decode():
    # 1 + 2*16 = 33 bytes; the cut splits the last 'é'
    frame = encode('a' + 'é' * 16)
    assert len(frame) == MSG_SIZE
    with pytest.raises(DecodeError):
        decode(frame)


def test_full_frame_without_zero():
    frame = b'x' * MSG_SIZE
    assert decode(frame) == 'x' * MSG_SIZE


def test_embedded_zero_truncates():
    assert decode(encode('ab\0cd')) == 'ab'


def test_invalid_utf8():
    with pytest.raises(DecodeError):
        decode(b'\xff\xfe' + b'\0' * 30)
    assert issubclass(DecodeError, ValueError)


def test_decode_ignores_length():
    assert decode(b'short') == 'short'
    assert decode(b'') == ''
