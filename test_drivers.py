"""
Reader driver tests.

Tests verify:
1. Bridge lines in key=value, CSV and bare-hex shapes decode; junk is rejected
2. TcpLineDriver against a local asyncio server: config frames on connect,
   START/STOP commands, tags only while scanning, lost link reported on EOF
3. A refused connection is a DeviceError
4. A config frame that fails to write closes the socket and leaves the driver disconnected
"""

import asyncio

from rfid_portal import commands
from rfid_portal.device_config import ReaderConfig
from rfid_portal.drivers import LOST, TAG, TcpLineDriver, parse_line
from rfid_portal.errors import DeviceError


def test_parse_line_shapes():
    assert parse_line("tid=E280AA epc=3000BB ant=2 rssi=-51.5") == {
        "tid": "E280AA", "epc": "3000BB", "ant": "2", "rssi": "-51.5"}
    assert parse_line("antenna=3;tid=ABC") == {"ant": "3", "tid": "ABC"}
    assert parse_line("3000BB,E280AA,1,-60") == {"epc": "3000BB", "tid": "E280AA", "ant": "1", "rssi": "-60"}
    assert parse_line("E2801160ABCD") == {"tid": "E2801160ABCD"}
    for junk in ("", "   ", "# comment", "hello", "ant=1", ",,,"):
        assert parse_line(junk) is None, f"{junk!r} should be dropped"
    print("[OK] line shapes")


def test_tcp_line_driver_roundtrip():
    print("\n" + "=" * 80)
    print("TEST: TcpLineDriver against a local bridge")
    print("=" * 80)

    async def scenario():
        received = bytearray()
        peer = {}
        got_start = asyncio.Event()

        async def handle(reader, writer):
            peer["writer"] = writer
            while True:
                chunk = await reader.read(256)
                if not chunk:
                    break
                received.extend(chunk)
                if b"START\r\n" in received:
                    got_start.set()

        srv = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = srv.sockets[0].getsockname()[1]

        drv = TcpLineDriver()
        await drv.connect(ReaderConfig(ip="127.0.0.1", port=port, power=25, antennas=[1, 2]))
        assert drv.connected and drv.is_alive()

        peer_writer = None
        for _ in range(100):
            peer_writer = peer.get("writer")
            if peer_writer is not None:
                break
            await asyncio.sleep(0.01)
        assert peer_writer is not None, "bridge never saw the connection"

        peer_writer.write(b"tid=EARLY\nnot a tag\n")     # not scanning yet: ignored
        await peer_writer.drain()
        for _ in range(200):
            if drv.malformed_lines:
                break
            await asyncio.sleep(0.01)
        assert drv.malformed_lines == 1 and drv.events.empty(), "nothing queued before scanning"

        await drv.start_scan()
        await asyncio.wait_for(got_start.wait(), 2.0)
        peer_writer.write(b"tid=E280AA ant=1\n3000BB,E280BB\n")
        await peer_writer.drain()

        tags = []
        while len(tags) < 2:
            msg = await asyncio.wait_for(drv.events.get(), 2.0)
            assert msg.kind == TAG
            tags.append(msg.payload["tid"])
        assert tags == ["E280AA", "E280BB"], f"tags while scanning only, got {tags}"
        assert drv.malformed_lines == 1

        expected = commands.set_power(25) + commands.set_antennas([1, 2]) + commands.APPLY_CONFIG
        assert bytes(received).startswith(expected), "config frames are written first"

        peer_writer.close()
        msg = await asyncio.wait_for(drv.events.get(), 2.0)
        assert msg.kind == LOST and not drv.connected, "EOF is reported as a lost link"

        await drv.disconnect()
        srv.close()
        await srv.wait_closed()

    asyncio.run(scenario())
    print("[OK] frames, START, tags, EOF")


def test_tcp_connect_refused():
    async def scenario():
        srv = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = srv.sockets[0].getsockname()[1]
        srv.close()
        await srv.wait_closed()

        drv = TcpLineDriver()
        try:
            await drv.connect(ReaderConfig(ip="127.0.0.1", port=port, connect_timeout_s=1.0))
        except DeviceError:
            return True
        return False

    assert asyncio.run(scenario()), "refused connect must raise DeviceError"
    print("[OK] refused connect -> DeviceError")


class FailingFrameDriver(TcpLineDriver):
    """Link comes up, then the second config frame fails to write."""
    def __init__(self):
        super().__init__()
        self.frames = 0

    async def send(self, frame: bytes) -> None:
        self.frames += 1
        if self.frames == 2:
            raise DeviceError("write failed: BrokenPipeError")
        await super().send(frame)


def test_config_frame_failure_closes_socket():
    print("\n" + "=" * 80)
    print("TEST: config frame write fails during connect")
    print("=" * 80)

    async def scenario():
        peer_eof = asyncio.Event()

        async def handle(reader, writer):
            while await reader.read(256):
                pass
            peer_eof.set()
            writer.close()

        srv = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = srv.sockets[0].getsockname()[1]

        drv = FailingFrameDriver()
        try:
            await drv.connect(ReaderConfig(ip="127.0.0.1", port=port))
        except DeviceError:
            pass
        else:
            raise AssertionError("connect must fail when a config frame cannot be written")

        assert not drv.connected, "driver must not report a live link"
        assert drv._writer is None and drv._rx is None, "socket and reader task are released"
        await asyncio.wait_for(peer_eof.wait(), 2.0)

        srv.close()
        await srv.wait_closed()

    asyncio.run(scenario())
    print("[OK] half-configured socket closed")


if __name__ == "__main__":
    test_parse_line_shapes()
    test_tcp_line_driver_roundtrip()
    test_tcp_connect_refused()
    test_config_frame_failure_closes_socket()
    print("\nAll driver tests passed.")
