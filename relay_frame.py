"""Fixed-width wire frames for the relay.

Every message travels as exactly MSG_SIZE bytes: the UTF-8 text, cut to
MSG_SIZE bytes and zero-padded on the right. There is no length prefix,
so a zero byte inside a message ends it on decode.
"""

MSG_SIZE = 32


class DecodeError(ValueError):
    """Frame payload is not valid UTF-8."""


def encode(text: str) -> bytes:
    """Frame text. Longer messages are truncated, never rejected."""
    data = text.encode('utf-8')[:MSG_SIZE]
    return data + b'\0' * (MSG_SIZE - len(data))


def decode(frame: bytes) -> str:
    end = frame.find(b'\0')
    if end == -1:
        end = len(frame)
    try:
        return frame[:end].decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(f'invalid UTF-8 in frame: {e.reason}') from e
