#!/usr/bin/env python3
"""
hidbridge - Command Line Interface

Entry point for the hidbridge package.
"""

import argparse
import sys
import time

from hidbridge.__version__ import __version__


def _parse_id(text):
    """USB ID from decimal ('1155') or hex ('0x0483')."""
    value = int(text, 0)
    if not 0 <= value <= 0xFFFF:
        raise argparse.ArgumentTypeError(f"USB ID out of range: {text}")
    return value


def _setup_logging(verbose=0):
    """Configure root logging from -v count."""
    import logging

    if verbose >= 2:
        logging.basicConfig(level=logging.DEBUG, format='[%(levelname)s] %(name)s: %(message)s')
        logging.getLogger('usb').setLevel(logging.WARNING)
    elif verbose == 1:
        logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
    else:
        logging.basicConfig(level=logging.WARNING)


def _add_target_args(parser):
    parser.add_argument("--vid", type=_parse_id, help="Vendor ID (e.g. 1155 or 0x0483)")
    parser.add_argument("--pid", type=_parse_id, help="Product ID (e.g. 22336 or 0x5740)")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="hidbridge",
        description="USB bulk bridge for HID-class devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    hidbridge detect                 Show the target device
    hidbridge detect --all           List all attached USB devices
    hidbridge listen --count 10      Print the next 10 frames
    hidbridge send "Hello"           Write text to every bulk OUT endpoint
    hidbridge send 48656c6c6f --hex  Write raw bytes
    hidbridge config --vid 0x0483 --pid 0x5740
    hidbridge serve --port 8765      Start the REST API
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Detect command
    detect_parser = subparsers.add_parser("detect", help="Detect the target device")
    detect_parser.add_argument("--all", "-a", action="store_true", help="Show all devices")
    _add_target_args(detect_parser)

    # Listen command
    listen_parser = subparsers.add_parser("listen", help="Print received frames")
    _add_target_args(listen_parser)
    listen_parser.add_argument("--count", "-n", type=int, default=0,
                               help="Stop after N frames (default: run until Ctrl+C)")
    listen_parser.add_argument("--seconds", "-s", type=float, default=0,
                               help="Stop after S seconds")
    listen_parser.add_argument("--sweep", action="store_true",
                               help="Single reader sweeping all endpoints (10 ms cadence)")

    # Send command
    send_parser = subparsers.add_parser("send", help="Write a frame to the device")
    send_parser.add_argument("data", help="Text to send (or hex with --hex)")
    send_parser.add_argument("--hex", action="store_true", help="Treat data as hex bytes")
    _add_target_args(send_parser)

    # Config command
    config_parser = subparsers.add_parser("config", help="Show or set the target device")
    _add_target_args(config_parser)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the REST API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8765, help="Bind port")
    serve_parser.add_argument("--token", help="Require X-API-Token header")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    _setup_logging(args.verbose)

    if args.command == "detect":
        return detect(show_all=args.all, vid=args.vid, pid=args.pid)
    elif args.command == "listen":
        return listen(vid=args.vid, pid=args.pid, count=args.count,
                      seconds=args.seconds, sweep=args.sweep)
    elif args.command == "send":
        return send(args.data, as_hex=args.hex, vid=args.vid, pid=args.pid)
    elif args.command == "config":
        return configure(vid=args.vid, pid=args.pid)
    elif args.command == "serve":
        return serve(host=args.host, port=args.port, token=args.token)

    return 0


def _make_bridge(vid=None, pid=None):
    """Bridge over the real pyusb backend, target from config unless overridden."""
    from hidbridge.bridge import Bridge
    from hidbridge.conf import settings
    from hidbridge.usb_backend import PyUsbBackend

    config = settings.bridge_config(vendor_id=vid, product_id=pid)
    bridge = Bridge(PyUsbBackend(), config=config)
    bridge.on_log_message = lambda text: print(f"  {text}")
    return bridge


def _format_device(dev):
    """Format an enumerated device for display."""
    node = dev.node_path or "no usbfs node"
    return f"{node} - {dev.display_name} [{dev.vid_pid}] ({dev.interface_count} interface(s))"


def detect(show_all=False, vid=None, pid=None):
    """Detect the target device (or list all devices)."""
    try:
        from hidbridge.conf import settings
        from hidbridge.core.errors import DeviceNotFound
        from hidbridge.device_locator import DeviceLocator
        from hidbridge.usb_backend import PyUsbBackend

        locator = DeviceLocator(PyUsbBackend())
        vid = settings.vendor_id if vid is None else vid
        pid = settings.product_id if pid is None else pid

        if show_all:
            devices = locator.enumerate()
            if not devices:
                print("No USB devices found.")
                return 1
            for i, dev in enumerate(devices, 1):
                marker = "*" if dev.identity == (vid, pid) else " "
                print(f"{marker} [{i}] {_format_device(dev)}")
            return 0

        try:
            dev = locator.require(vid, pid)
        except DeviceNotFound as e:
            print(f"{e}. Did you forget to plug it?")
            return 1
        print(f"Target: {_format_device(dev)}")
        return 0
    except Exception as e:
        print(f"Error: {e}")
        return 1


def listen(vid=None, pid=None, count=0, seconds=0, sweep=False):
    """Open the device, start reading, print frames as they arrive."""
    from hidbridge.core.models import PermissionOutcome

    try:
        bridge = _make_bridge(vid, pid)
    except Exception as e:
        print(f"Error: {e}")
        return 1

    try:
        if not bridge.open():
            return 1
        outcome = bridge.wait_for_permission(timeout=5.0)
        if outcome is PermissionOutcome.DENIED:
            print("Permission denied. Install a udev rule for the device or run as root.")
            return 1

        bridge.start_reading(mode="sweep" if sweep else "per_endpoint")
        deadline = time.monotonic() + seconds if seconds else None
        received = 0
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                break
            frame = bridge.pop_frame(timeout=0.5)
            if frame is None:
                continue
            received += 1
            print(f"EP 0x{frame.endpoint:02x} #{frame.sequence} ({len(frame)} B): {frame.hex()}")
            if count and received >= count:
                break
        return 0
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 0
    finally:
        bridge.close(timeout=3.0)


def send(data, as_hex=False, vid=None, pid=None):
    """Write one frame to every bulk OUT endpoint."""
    try:
        payload = bytes.fromhex(data) if as_hex else data.encode("utf-8")
    except ValueError:
        print(f"Error: invalid hex data: {data}")
        return 1

    bridge = None
    try:
        bridge = _make_bridge(vid, pid)
        if not bridge.open():
            return 1
        bridge.wait_for_permission(timeout=5.0)
        result = bridge.write_frame(payload)
        for address, written in result.per_endpoint.items():
            status = f"{written} byte(s)" if written is not None else result.errors[address]
            print(f"  EP 0x{address:02x}: {status}")
        print(f"Sent {len(payload)} byte(s)" if result.ok else "Send failed")
        return 0 if result.ok else 1
    except Exception as e:
        print(f"Error sending data: {e}")
        return 1
    finally:
        if bridge is not None:
            bridge.close()


def configure(vid=None, pid=None):
    """Show the saved target device, or update it."""
    from hidbridge.conf import CONFIG_PATH, settings

    if (vid is None) != (pid is None):
        print("Error: give both --vid and --pid")
        return 1
    if vid is not None:
        settings.set_target(vid, pid)
        print(f"Target set to {vid:04x}:{pid:04x} ({CONFIG_PATH})")
        return 0

    config = settings.bridge_config()
    print(f"Config: {CONFIG_PATH}")
    for key, value in config.to_dict().items():
        if key in ("vendor_id", "product_id"):
            value = f"{value} (0x{value:04x})"
        print(f"  {key}: {value}")
    return 0


def serve(host="127.0.0.1", port=8765, token=None):
    """Start the REST API with uvicorn."""
    try:
        import uvicorn

        from hidbridge.api import app, configure_auth

        configure_auth(token)
        print(f"[hidbridge] REST API on http://{host}:{port}")
        uvicorn.run(app, host=host, port=port, log_level="info")
        return 0
    except ImportError as e:
        print(f"Error: REST dependencies not available: {e}")
        print("Install with: pip install fastapi uvicorn")
        return 1


if __name__ == "__main__":
    sys.exit(main())
