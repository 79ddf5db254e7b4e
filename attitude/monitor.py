#!/usr/bin/env python3
"""
monitor.py -- Console orientation monitor.

Reads IMU samples (serial or synthetic), runs them through the
:class:`DataProcessor`, and streams orientation to the console.

Usage
-----
  python3 -m attitude.monitor                        # auto-detect port
  python3 -m attitude.monitor /dev/ttyACM0           # explicit port
  python3 -m attitude.monitor --mock                 # synthetic figure-eight
  python3 -m attitude.monitor --tcp                  # Pico W over TCP :8080
  python3 -m attitude.monitor --filter madgwick      # choose the estimator
  python3 -m attitude.monitor --calibrate            # stationary calibration first
  python3 -m attitude.monitor --load-cal cal.json    # reuse a saved calibration
  python3 -m attitude.monitor --csv > session.csv    # log to CSV

Workflow
--------
1. Optionally hold the sensor STILL, z-up, for a 1000-sample calibration.
2. Move the sensor -> roll/pitch/yaw and the quaternion stream live.
3. Ctrl+C stops; ``--save-cal`` writes the active calibration on exit.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time

from .config import PROFILES, ProcessorConfig
from .errors import TransportError
from .events import CalibrationEvent, ErrorEvent, EventDispatcher
from .filters import FilterType, q2euler
from .imu_driver import BAUD, TCP_PORT, open_source
from .processor import DataProcessor


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="IMU orientation monitor")
    ap.add_argument("port", nargs="?", help="Serial port (auto-detect)")
    ap.add_argument("-b", "--baud", type=int, default=BAUD)
    ap.add_argument("--tcp", nargs="?", type=int, const=TCP_PORT, metavar="PORT",
                    help=f"Listen for a Pico W client over TCP (default port {TCP_PORT})")
    ap.add_argument("--mock", action="store_true", help="Synthetic figure-eight source")
    ap.add_argument("--rate", type=float, default=100.0,
                    help="Mock sample rate in Hz (default 100)")
    ap.add_argument("--filter", choices=[t.value for t in FilterType], default=None,
                    help="Orientation filter (default: profile's)")
    ap.add_argument("--profile", choices=sorted(PROFILES), default="desktop")
    ap.add_argument("--calibrate", action="store_true",
                    help="Run a stationary calibration before streaming")
    ap.add_argument("--load-cal", metavar="PATH", help="Load calibration JSON")
    ap.add_argument("--save-cal", metavar="PATH", help="Save calibration JSON on exit")
    ap.add_argument("-n", "--count", type=int, default=0,
                    help="Stop after N orientation updates (0 = unlimited)")
    ap.add_argument("--csv", action="store_true", help="CSV output mode")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def main(argv: list[str] | None = None) -> None:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    config = ProcessorConfig.from_profile(args.profile)
    if args.filter:
        config.default_filter = FilterType(args.filter)
    proc = DataProcessor(config)

    dispatcher = EventDispatcher(proc.channel)
    dispatcher.subscribe(ErrorEvent, lambda e: print(
        f"\n  !! [{e.category}] {e.message}", file=sys.stderr))
    dispatcher.subscribe(CalibrationEvent, lambda e: print(
        f"\n  >> Calibration installed.\n{e.calibration.summary()}", file=sys.stderr))
    dispatcher.start()

    if args.load_cal:
        proc.load_calibration(args.load_cal)

    stop = False
    def _sigint(*_):
        nonlocal stop
        stop = True
    signal.signal(signal.SIGINT, _sigint)

    if args.mock:
        source = "mock"
    elif args.tcp is not None:
        source = f"tcp :{args.tcp}"
    else:
        source = args.port or "auto"
    if not args.csv:
        print(f"\n{'='*62}")
        print(f"  Orientation monitor -- {config.default_filter.value} filter")
        print(f"{'='*62}")
        print(f"  Source : {source}")
        print(f"  Profile: {args.profile}")
        print(f"{'='*62}\n")

    count = 0
    t0 = time.monotonic()
    try:
        imu = open_source(args.port, args.baud, tcp_port=args.tcp,
                          mock=args.mock, rate_hz=args.rate)

        # -- Phase 1: Calibration --
        if args.calibrate:
            print(f"  >> Hold sensor STILL, z-up -- calibrating "
                  f"({config.calibration_samples} samples) ...", flush=True)
            proc.start_calibration()
            for sample in imu:
                if stop:
                    sys.exit("\nAborted during calibration.")
                proc.process_sample(sample)
                if proc.calibration_progress >= 1.0:
                    break
            proc.finish_calibration()

        # -- Phase 2: Streaming --
        if args.csv:
            print("t_us,qw,qx,qy,qz,roll,pitch,yaw")

        t0 = time.monotonic()
        for sample in imu:
            if stop:
                break
            q = proc.process_sample(sample)
            if q is None:
                continue
            count += 1
            e = q2euler(q)
            if args.csv:
                print(f"{sample.timestamp},{q[0]:.6f},{q[1]:.6f},{q[2]:.6f},{q[3]:.6f},"
                      f"{e[0]:.2f},{e[1]:.2f},{e[2]:.2f}")
            else:
                sys.stdout.write(
                    f"\r  q=[{q[0]:+.3f} {q[1]:+.3f} {q[2]:+.3f} {q[3]:+.3f}]  "
                    f"R={e[0]:+7.2f}  P={e[1]:+7.2f}  Y={e[2]:+7.2f} deg  "
                    f"({count} updates)")
                sys.stdout.flush()
            if args.count and count >= args.count:
                break
    except TransportError as e:
        proc.report_transport_error(str(e))
    finally:
        if args.save_cal:
            proc.save_calibration(args.save_cal)
        dispatcher.stop()

    # -- Shutdown --
    elapsed = time.monotonic() - t0
    hz = count / elapsed if elapsed > 0 else 0
    if not args.csv:
        print(f"\n\n{'='*62}")
        print(f"  {count} orientation updates in {elapsed:.1f} s  ({hz:.0f} Hz)")
        print(f"{'='*62}\n")


if __name__ == "__main__":
    main()
