import asyncio
from types import SimpleNamespace

import pytest

from nhicard import APDU, NoCardError


def make_raw(card_no=b"000012345678", name="陳小明", id_no=b"A123456789",
             birth=b"0790101", sex=b"M", issue=b"1120520", name_bytes=None):
    """Build a 57-byte basic-data buffer"""
    if name_bytes is None:
        name_bytes = name.encode("big5")
    name_bytes = name_bytes.ljust(20, b"\x00")[:20]
    return card_no + name_bytes + id_no + birth + sex + issue


OK = (0x90, 0x00)


class FakeCard:
    """Card handle answering from a script of responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.sent = []
        self.disconnected = False

    def transmit(self, apdu):
        self.sent.append(list(apdu))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnected = True


def nhi_card(raw=None):
    raw = make_raw() if raw is None else raw
    return FakeCard(([], *OK), (list(raw), *OK))


class FakeContext:
    """
    PC/SC context stand-in.

    readers maps reader name -> FakeCard, or an exception raised by connect.
    list_errors are raised by successive list_readers calls before succeeding.
    reset_error, if set, is raised by reset().
    """

    def __init__(self, readers=None, list_errors=(), reset_error=None):
        self.readers = dict(readers or {})
        self.list_errors = list(list_errors)
        self.reset_error = reset_error
        self.released = 0
        self.resets = 0
        self.list_calls = 0

    def list_readers(self):
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return list(self.readers)

    def connect(self, reader_name):
        card = self.readers[reader_name]
        if isinstance(card, Exception):
            raise card
        return card

    def release(self):
        self.released += 1

    def reset(self):
        self.resets += 1
        self.release()
        if self.reset_error is not None:
            raise self.reset_error


CLOSE = object()


class FakeWebSocket:
    """Server-side WebSocket connection stand-in"""

    def __init__(self, path="/ws", fail_sends=False, hang_sends=False):
        self.request = SimpleNamespace(path=path)
        self.fail_sends = fail_sends
        self.hang_sends = hang_sends
        self.sent = []
        self.timeline = []
        self.send_attempts = 0
        self.pings = 0
        self.closed = False
        self.incoming = asyncio.Queue()

    async def send(self, message):
        self.send_attempts += 1
        if self.hang_sends:
            await asyncio.Event().wait()
        if self.fail_sends:
            raise OSError("broken pipe")
        self.sent.append(message)
        self.timeline.append(("frame", asyncio.get_running_loop().time()))

    async def ping(self):
        self.pings += 1
        self.timeline.append(("ping", asyncio.get_running_loop().time()))
        pong = asyncio.get_running_loop().create_future()
        pong.set_result(0.0)
        return pong

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class StaticCache:
    """fetch_fresh() returning a fixed payload, optionally after a delay"""

    def __init__(self, payload="[]", delay=0.0):
        self.payload = payload
        self.delay = delay
        self.calls = 0

    async def fetch_fresh(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.payload


@pytest.fixture
def raw_record():
    return make_raw()


@pytest.fixture
def no_card():
    return NoCardError("no card", 0)


@pytest.fixture
def select_apdu():
    return APDU.SELECT_NHI_APP
