#!/usr/bin/env python3
"""
dashboard.py -- Real-time orientation dashboard with matplotlib.

Two-panel live visualization:
  ┌─────────────────────────────────┐
  │  Euler angles (roll/pitch/yaw °)│
  ├─────────────────────────────────┤
  │  Quaternion components w x y z  │
  └─────────────────────────────────┘

Keys
----
  1 / 2 / 3   complementary / madgwick / kalman filter
  c           start calibration (hold sensor still, z-up)
  f           finish calibration
  r           reset orientation
  s / l       save / load calibration (``--cal-file``)

Usage
-----
  python3 -m attitude.dashboard                    # auto-detect port
  python3 -m attitude.dashboard /dev/ttyACM0       # explicit port
  python3 -m attitude.dashboard --mock             # synthetic source
  python3 -m attitude.dashboard --tcp              # Pico W over TCP :8080
  python3 -m attitude.dashboard --window 10.0      # 10 s rolling window
"""

from __future__ import annotations

import argparse
import threading

import numpy as np
import matplotlib
matplotlib.use("TkAgg")
import matplotlib.pyplot as plt
import matplotlib.gridspec as gridspec
from matplotlib.animation import FuncAnimation

from .config import PROFILES, ProcessorConfig
from .errors import TransportError
from .events import CalibrationEvent, ErrorEvent, OrientationEvent
from .filters import FilterType, q2euler
from .imu_driver import BAUD, TCP_PORT, open_source
from .processor import DataProcessor

_FILTER_KEYS = {"1": FilterType.COMPLEMENTARY, "2": FilterType.MADGWICK, "3": FilterType.KALMAN}


# ── Circular buffer for rolling plots ──────────────────────────────────────

class RingBuffer:
    """Fixed-size ring buffer backed by numpy arrays."""
    def __init__(self, maxlen: int, ncols: int = 1):
        self.maxlen = maxlen
        self.ncols = ncols
        self.data = np.zeros((maxlen, ncols))
        self.idx = 0
        self.full = False

    def append(self, row: np.ndarray | list | tuple) -> None:
        self.data[self.idx] = row
        self.idx += 1
        if self.idx >= self.maxlen:
            self.idx = 0
            self.full = True

    def get(self) -> np.ndarray:
        if self.full:
            return np.roll(self.data, -self.idx, axis=0)
        return self.data[:self.idx]


# ── Sample thread ──────────────────────────────────────────────────────────

def _imu_thread(proc: DataProcessor, source) -> None:
    try:
        for sample in source:
            proc.process_sample(sample)
    except TransportError as e:
        proc.report_transport_error(str(e))


# ── Dashboard ──────────────────────────────────────────────────────────────

def _build_dashboard(proc: DataProcessor, window_sec: float, rate_hz: float,
                     cal_file: str):
    ring_len = max(int(window_sec * rate_hz), 10)
    t_buf = RingBuffer(ring_len, 1)
    euler = RingBuffer(ring_len, 3)
    quat = RingBuffer(ring_len, 4)
    status = {"message": "", "t0": None}

    plt.style.use("dark_background")
    fig = plt.figure(figsize=(12, 7))
    fig.canvas.manager.set_window_title("Orientation Dashboard")

    gs = gridspec.GridSpec(2, 1, hspace=0.35,
                           left=0.08, right=0.96, top=0.90, bottom=0.08)

    # ── Panel 1: Euler ──
    ax_eul = fig.add_subplot(gs[0, 0])
    ax_eul.set_title("Orientation", fontsize=11, pad=8)
    ax_eul.set_ylabel("degrees")
    ax_eul.set_ylim(-180, 180)
    line_roll, = ax_eul.plot([], [], lw=1.5, color="#DA77F2", label="Roll")
    line_pitch, = ax_eul.plot([], [], lw=1.5, color="#20C997", label="Pitch")
    line_yaw, = ax_eul.plot([], [], lw=1.5, color="#FCC419", label="Yaw")
    ax_eul.legend(loc="upper right", fontsize=8)
    ax_eul.grid(alpha=0.2)

    # ── Panel 2: Quaternion ──
    ax_q = fig.add_subplot(gs[1, 0])
    ax_q.set_title("Quaternion", fontsize=11, pad=8)
    ax_q.set_xlabel("time (s)")
    ax_q.set_ylim(-1.05, 1.05)
    q_lines = [ax_q.plot([], [], lw=1, color=c, label=n)[0]
               for c, n in zip(("#F8F9FA", "#FF6B6B", "#51CF66", "#339AF0"), "wxyz")]
    ax_q.legend(loc="upper right", fontsize=8)
    ax_q.grid(alpha=0.2)

    status_text = fig.text(0.5, 0.95, "", ha="center", fontsize=12,
                           color="#51CF66", fontweight="bold")

    # ── Keyboard control ──
    def _on_key(event):
        key = event.key
        if key in _FILTER_KEYS:
            if proc.set_filter_type(_FILTER_KEYS[key]):
                status["message"] = f"filter → {_FILTER_KEYS[key].value}"
        elif key == "c":
            proc.start_calibration()
            status["message"] = "calibrating -- hold sensor still"
        elif key == "f":
            proc.finish_calibration()
        elif key == "r":
            proc.reset_orientation()
            status["message"] = "orientation reset"
        elif key == "s":
            if proc.save_calibration(cal_file):
                status["message"] = f"calibration saved to {cal_file}"
        elif key == "l":
            proc.load_calibration(cal_file)

    fig.canvas.mpl_connect("key_press_event", _on_key)

    # ── Animation update ──
    def _update(frame):
        for ev in proc.channel.drain():
            if isinstance(ev, OrientationEvent):
                if status["t0"] is None:
                    status["t0"] = ev.timestamp
                t_buf.append([(ev.timestamp - status["t0"]) * 1e-6])
                euler.append(q2euler(ev.quaternion))
                quat.append(ev.quaternion)
            elif isinstance(ev, CalibrationEvent):
                status["message"] = "calibration installed"
            elif isinstance(ev, ErrorEvent) and ev.category != "validation":
                status["message"] = f"[{ev.category}] {ev.message}"

        t = t_buf.get().flatten()
        if len(t) > 1:
            t_max = t[-1]
            t_min = max(0, t_max - window_sec)
            e = euler.get()
            q = quat.get()
            line_roll.set_data(t, e[:, 0])
            line_pitch.set_data(t, e[:, 1])
            line_yaw.set_data(t, e[:, 2])
            for i, ln in enumerate(q_lines):
                ln.set_data(t, q[:, i])
            ax_eul.set_xlim(t_min, t_max)
            ax_q.set_xlim(t_min, t_max)

        if proc.is_calibrating:
            text = f"⏳  Calibrating … {proc.calibration_progress*100:.0f}%"
            color = "#FCC419"
        else:
            text = f"Filter: {proc.filter_type.value}"
            color = "#51CF66"
        if status["message"]:
            text += f"   │   {status['message']}"
        status_text.set_text(text)
        status_text.set_color(color)
        return []

    ani = FuncAnimation(fig, _update, interval=50, blit=False, cache_frame_data=False)
    return fig, ani


# ── Main ────────────────────────────────────────────────────────────────────

def main() -> None:
    ap = argparse.ArgumentParser(description="Orientation dashboard -- real-time visualization")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--tcp", nargs="?", type=int, const=TCP_PORT, metavar="PORT",
                    help=f"Listen for a Pico W client over TCP (default port {TCP_PORT})")
    ap.add_argument("--mock", action="store_true", help="Synthetic figure-eight source")
    ap.add_argument("--rate", type=float, default=100.0,
                    help="Expected sample rate in Hz (default 100)")
    ap.add_argument("--profile", choices=sorted(PROFILES), default="desktop")
    ap.add_argument("--filter", choices=[t.value for t in FilterType], default=None)
    ap.add_argument("--cal-file", default="calibration.json",
                    help="Calibration file for s/l keys")
    ap.add_argument("--window", type=float, default=5.0,
                    help="Rolling plot window in seconds (default 5)")
    args = ap.parse_args()

    config = ProcessorConfig.from_profile(args.profile)
    if args.filter:
        config.default_filter = FilterType(args.filter)
    # Sized so the 50 ms plot timer never falls behind at sensor rate
    config.event_queue_size = max(config.event_queue_size, int(args.rate * 2))
    proc = DataProcessor(config)

    source = open_source(args.port, args.baud, tcp_port=args.tcp,
                         mock=args.mock, rate_hz=args.rate)

    # ── Start IMU thread ──
    t = threading.Thread(target=_imu_thread, args=(proc, source), daemon=True)
    t.start()

    if args.mock:
        label = "mock"
    elif args.tcp is not None:
        label = f"tcp :{args.tcp}"
    else:
        label = args.port or "auto"
    print(f"\n  Orientation Dashboard -- {label}")
    print(f"  Keys: 1/2/3 filter, c/f calibrate, r reset, s/l save/load\n")

    # ── Launch plot (blocks on main thread) ──
    fig, ani = _build_dashboard(proc, args.window, args.rate, args.cal_file)
    plt.show()


if __name__ == "__main__":
    main()
