#!/usr/bin/env python3
"""
imu_driver.py -- IMU sample sources feeding the attitude pipeline.

Packet (26 bytes, little-endian float32 fields, already in SI units):
  [0xAA][AX][AY][AZ][GX][GY][GZ][0x55]
         m/s²        rad/s

The same frame arrives over a USB serial link (:func:`stream`) or from a
Pico W over TCP (:func:`tcp_stream`).  Both resync by hunting for the
start byte and dropping a single byte whenever the end marker is wrong.
Samples are stamped with a monotonic microsecond clock on arrival.

:func:`mock_stream` synthesises a figure-eight motion for running the
pipeline without hardware.
"""

from __future__ import annotations

import glob
import logging
import math
import select
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Generator, Iterator, Optional

import numpy as np
import serial
import serial.tools.list_ports

from .errors import TransportError

logger = logging.getLogger(__name__)

# ── Link constants ──────────────────────────────────────────────────────────
BAUD       = 115_200
TCP_PORT   = 8080
PKT_LEN    = 26         # 1 start + 6 × float32 + 1 end
PKT_START  = 0xAA
PKT_END    = 0x55
_PAYLOAD   = struct.Struct("<6f")


@dataclass(frozen=True)
class IMUSample:
    """One IMU reading crossing the transport boundary."""
    timestamp: int                                              # monotonic µs
    accel: np.ndarray = field(default_factory=lambda: np.zeros(3))  # m/s²
    gyro: np.ndarray = field(default_factory=lambda: np.zeros(3))   # rad/s
    seq: int = 0                                                # transport sequence number

    def __post_init__(self):
        object.__setattr__(self, "accel", np.asarray(self.accel, dtype=float))
        object.__setattr__(self, "gyro", np.asarray(self.gyro, dtype=float))


def now_us() -> int:
    return time.monotonic_ns() // 1000


def encode_packet(accel, gyro) -> bytes:
    """Frame one reading the way the sensor firmware does."""
    return bytes([PKT_START]) + _PAYLOAD.pack(*accel, *gyro) + bytes([PKT_END])


def decode_packet(pkt: bytes, timestamp: int, seq: int = 0,
                  flip_x: bool = False) -> IMUSample:
    """
    Decode one framed packet into an :class:`IMUSample`.

    ``flip_x`` negates the x axis of both sensors (the Pico W board is
    mounted mirrored relative to the USB sensor).

    Raises ValueError if the frame length or markers are wrong.
    """
    if len(pkt) != PKT_LEN or pkt[0] != PKT_START or pkt[-1] != PKT_END:
        raise ValueError(f"bad frame: {bytes(pkt).hex()}")

    vals = _PAYLOAD.unpack_from(pkt, 1)
    accel = np.array(vals[:3], dtype=float)
    gyro = np.array(vals[3:], dtype=float)
    if flip_x:
        accel[0] = -accel[0]
        gyro[0] = -gyro[0]
    return IMUSample(timestamp=timestamp, accel=accel, gyro=gyro, seq=seq)


def take_frames(buf: bytearray) -> Iterator[bytes]:
    """
    Consume complete frames from the front of *buf*.

    Leading junk before a start byte is discarded; a candidate frame with
    the wrong end marker costs one byte.  A trailing partial frame is left
    in *buf* for the next read.
    """
    while len(buf) >= PKT_LEN:
        start = buf.find(PKT_START)
        if start < 0:
            buf.clear()
            return
        if start > 0:
            del buf[:start]
        if len(buf) < PKT_LEN:
            return
        if buf[PKT_LEN - 1] == PKT_END:
            pkt = bytes(buf[:PKT_LEN])
            del buf[:PKT_LEN]
            yield pkt
        else:
            del buf[:1]


def find_port() -> Optional[str]:
    """Auto-detect a USB-UART serial port."""
    for p in serial.tools.list_ports.comports():
        d = ((p.description or "") + (p.manufacturer or "")).lower()
        if any(k in d for k in ("ftdi", "ft2232", "cp210", "ch340", "pico", "uart")):
            return p.device
    usbs = sorted(glob.glob("/dev/ttyUSB*") + glob.glob("/dev/ttyACM*"))
    return usbs[0] if usbs else None


# ── Serial source ───────────────────────────────────────────────────────────

def stream(port: Optional[str] = None,
           baud: int = BAUD) -> Generator[IMUSample, None, None]:
    """
    Open *port* and yield one :class:`IMUSample` per valid packet.

    Serial failures are raised as :class:`TransportError`.
    """
    port = port or find_port()
    if port is None:
        raise TransportError("No serial port found.  Is the sensor connected?")

    try:
        ser = serial.Serial(port, baud, timeout=0.5)
        ser.reset_input_buffer()
    except serial.SerialException as e:
        raise TransportError(f"cannot open {port}: {e}") from e

    buf = bytearray()
    seq = 0

    try:
        while True:
            try:
                waiting = ser.in_waiting
                chunk = ser.read(max(waiting, 1))
            except serial.SerialException as e:
                raise TransportError(f"read from {port} failed: {e}") from e
            if not chunk:
                continue
            buf.extend(chunk)

            for pkt in take_frames(buf):
                seq += 1
                yield decode_packet(pkt, now_us(), seq)
    finally:
        ser.close()


# ── TCP source ──────────────────────────────────────────────────────────────

def tcp_stream(port: int = TCP_PORT,
               host: str = "",
               flip_x: bool = True,
               poll: float = 0.5) -> Generator[IMUSample, None, None]:
    """
    Listen on *host*:*port* and yield samples from one client at a time.

    Further clients are refused while one is connected.  When the client
    disconnects the server waits for the next one; the frame buffer starts
    empty for every new connection.  Listen and receive failures are raised
    as :class:`TransportError`.
    """
    try:
        server = socket.create_server((host, port))
    except OSError as e:
        raise TransportError(f"cannot listen on port {port}: {e}") from e
    logger.info("listening for IMU client on port %d", port)

    client: Optional[socket.socket] = None
    buf = bytearray()
    seq = 0

    try:
        while True:
            watched = [server] if client is None else [server, client]
            try:
                readable, _, _ = select.select(watched, [], [], poll)
            except OSError as e:
                raise TransportError(f"tcp port {port}: {e}") from e

            # Read the current client first so a hang-up frees the slot
            if client is not None and client in readable:
                try:
                    chunk = client.recv(4096)
                except OSError as e:
                    raise TransportError(f"receive on port {port} failed: {e}") from e
                if chunk:
                    buf.extend(chunk)
                else:
                    logger.info("client disconnected")
                    client.close()
                    client = None

            if server in readable:
                conn, addr = server.accept()
                if client is not None:
                    logger.info("refusing second client %s:%d", *addr[:2])
                    conn.close()
                else:
                    logger.info("client connected from %s:%d", *addr[:2])
                    client = conn
                    buf.clear()

            for pkt in take_frames(buf):
                seq += 1
                yield decode_packet(pkt, now_us(), seq, flip_x=flip_x)
    finally:
        if client is not None:
            client.close()
        server.close()


# ── Synthetic source ────────────────────────────────────────────────────────

def mock_stream(rate_hz: float = 100.0,
                duration: Optional[float] = None,
                realtime: bool = True) -> Generator[IMUSample, None, None]:
    """
    Yield a synthetic figure-eight motion at *rate_hz*.

    With ``realtime=False`` timestamps advance by exactly one period and
    no sleeping is done (useful for replay and tests).
    """
    period = 1.0 / rate_hz
    t0 = now_us()
    seq = 0
    while True:
        if realtime:
            ts = now_us() - t0 + 1
        else:
            ts = 1 + int(round(seq * period * 1e6))
        t = ts * 1e-6
        if duration is not None and t > duration:
            return

        seq += 1
        yield IMUSample(
            timestamp=ts,
            accel=np.array([
                math.sin(2 * t) * 3.0,
                math.sin(t) * math.cos(t) * 3.0,
                9.81 + math.sin(t * 0.5) * 0.5,
            ]),
            gyro=np.array([
                math.sin(t * 0.5) * 0.3,
                math.cos(t * 0.5) * 0.3,
                1.0,
            ]),
            seq=seq,
        )
        if realtime:
            time.sleep(period)


def open_source(port: Optional[str] = None,
                baud: int = BAUD,
                tcp_port: Optional[int] = None,
                mock: bool = False,
                rate_hz: float = 100.0) -> Generator[IMUSample, None, None]:
    """Pick the sample source the command-line tools were asked for."""
    if mock:
        return mock_stream(rate_hz)
    if tcp_port is not None:
        return tcp_stream(tcp_port)
    return stream(port, baud)
