"""FastAPI REST API — Driving adapter for headless/remote control.

Endpoints:
    GET  /health                — Server status
    GET  /devices               — List attached USB devices
    GET  /bridge                — Bridge state, bound device, endpoints
    POST /bridge/open           — Locate target + request permission
    POST /bridge/reading/start  — Start the readers
    POST /bridge/reading/stop   — Stop the readers
    POST /bridge/write          — Write a frame to every bulk OUT endpoint
    GET  /bridge/frames         — Drain received frames (oldest first)

Security:
    - Localhost-only by default (bind 127.0.0.1)
    - Optional token auth via --token flag (X-API-Token header)
    - 64 KB frame limit on writes
"""
from __future__ import annotations

import base64
import binascii
import logging
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hidbridge.__version__ import __version__
from hidbridge.bridge import READ_MODES, Bridge
from hidbridge.core.models import Device, EndpointDescriptor, Frame

log = logging.getLogger(__name__)

MAX_FRAME_BYTES = 64 * 1024  # 64 KB
MAX_FRAMES_PER_POLL = 1000

app = FastAPI(title="hidbridge", version=__version__)

# ── Shared bridge instance ────────────────────────────────────────────

_bridge: Bridge | None = None


def set_bridge(bridge: Bridge | None) -> None:
    """Replace the shared bridge (tests inject one over a fake backend)."""
    global _bridge  # noqa: PLW0603
    if _bridge is not None and _bridge is not bridge:
        _bridge.close(timeout=1.0)
    _bridge = bridge


def get_bridge() -> Bridge:
    """Shared bridge, created on first use from the saved settings."""
    global _bridge  # noqa: PLW0603
    if _bridge is None:
        from hidbridge.conf import settings
        from hidbridge.usb_backend import PyUsbBackend

        try:
            backend = PyUsbBackend()
        except ImportError as e:
            raise HTTPException(status_code=503, detail=str(e))
        _bridge = Bridge(backend, config=settings.bridge_config())
        _bridge.on_log_message = lambda text: log.debug("bridge: %s", text)
    return _bridge


# ── Token auth middleware (optional, enabled via --token) ─────────────

_api_token: str | None = None


def configure_auth(token: str | None) -> None:
    """Set the API token. Called by CLI serve command."""
    global _api_token  # noqa: PLW0603
    _api_token = token


@app.middleware("http")
async def check_token(request: Request, call_next):
    """Reject requests without valid token (if token is configured)."""
    if _api_token and request.url.path != "/health":
        if request.headers.get("X-API-Token") != _api_token:
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})
    return await call_next(request)


# ── Pydantic models ──────────────────────────────────────────────────

class DeviceResponse(BaseModel):
    name: str
    vid: int
    pid: int
    vid_pid: str
    interfaces: int
    path: str


class EndpointResponse(BaseModel):
    address: int
    direction: str
    max_packet_size: int


class BridgeResponse(BaseModel):
    state: str
    vid: int
    pid: int
    device: Optional[DeviceResponse] = None
    bulk_in: list[EndpointResponse] = []
    bulk_out: list[EndpointResponse] = []
    permission: Optional[str] = None
    reading: bool = False
    queued: int = 0
    dropped: int = 0


class ReadingRequest(BaseModel):
    mode: Literal["per_endpoint", "sweep"] = "per_endpoint"


class WriteRequest(BaseModel):
    data: str
    encoding: Literal["text", "hex", "base64"] = "text"


class WriteResponse(BaseModel):
    ok: bool
    length: int
    endpoints: dict[str, Optional[int]] = {}
    errors: dict[str, str] = {}


class FrameResponse(BaseModel):
    endpoint: int
    sequence: int
    length: int
    hex: str


# ── Helpers ───────────────────────────────────────────────────────────

def _device_to_response(dev: Device) -> DeviceResponse:
    return DeviceResponse(
        name=dev.display_name,
        vid=dev.vendor_id,
        pid=dev.product_id,
        vid_pid=dev.vid_pid,
        interfaces=dev.interface_count,
        path=dev.node_path or "",
    )


def _endpoint_to_response(ep: EndpointDescriptor) -> EndpointResponse:
    return EndpointResponse(address=ep.address, direction=ep.direction.name,
                            max_packet_size=ep.max_packet_size)


def _frame_to_response(frame: Frame) -> FrameResponse:
    return FrameResponse(endpoint=frame.endpoint, sequence=frame.sequence,
                         length=len(frame), hex=frame.data.hex())


def _bridge_to_response(bridge: Bridge) -> BridgeResponse:
    device = bridge.device
    future = bridge.permission
    permission = None
    if future is not None:
        permission = future.result().value if future.done() else "pending"
    return BridgeResponse(
        state=bridge.state.name,
        vid=bridge.config.vendor_id,
        pid=bridge.config.product_id,
        device=_device_to_response(device) if device else None,
        bulk_in=[_endpoint_to_response(ep) for ep in bridge.bulk_in],
        bulk_out=[_endpoint_to_response(ep) for ep in bridge.bulk_out],
        permission=permission,
        reading=bridge.is_reading,
        queued=len(bridge.queue),
        dropped=bridge.queue.dropped,
    )


def _decode_payload(req: WriteRequest) -> bytes:
    """Decode the request payload, raise 400 on malformed input."""
    try:
        if req.encoding == "hex":
            return bytes.fromhex(req.data)
        if req.encoding == "base64":
            return base64.b64decode(req.data, validate=True)
    except (ValueError, binascii.Error) as e:
        raise HTTPException(status_code=400, detail=f"Invalid {req.encoding} data: {e}")
    return req.data.encode("utf-8")


# ── Endpoints ────────────────────────────────────────────────────────

@app.get("/health")
def health() -> dict:
    """Health check (always accessible, no auth required)."""
    return {"status": "ok", "version": __version__}


@app.get("/devices")
def list_devices() -> list[DeviceResponse]:
    """List every attached USB device."""
    return [_device_to_response(d) for d in get_bridge().locator.enumerate()]


@app.get("/bridge")
def bridge_status() -> BridgeResponse:
    """Current bridge state."""
    return _bridge_to_response(get_bridge())


@app.post("/bridge/open")
def open_bridge() -> BridgeResponse:
    """Locate the target device and request permission."""
    bridge = get_bridge()
    if not bridge.open():
        cfg = bridge.config
        raise HTTPException(
            status_code=404,
            detail=f"Device {cfg.vendor_id:04x}:{cfg.product_id:04x} not found")
    return _bridge_to_response(bridge)


@app.post("/bridge/reading/start")
def start_reading(req: Optional[ReadingRequest] = None) -> BridgeResponse:
    """Start the readers (per-endpoint workers or one sweeping reader)."""
    bridge = get_bridge()
    mode = req.mode if req else READ_MODES[0]
    if not bridge.start_reading(mode=mode) and not bridge.is_reading:
        raise HTTPException(status_code=409, detail="No device or no bulk IN endpoint")
    return _bridge_to_response(bridge)


@app.post("/bridge/reading/stop")
def stop_reading() -> BridgeResponse:
    """Stop the readers and wait for them to release the interface."""
    bridge = get_bridge()
    bridge.stop_reading(join=True, timeout=5.0)
    return _bridge_to_response(bridge)


@app.post("/bridge/write")
def write_frame(req: WriteRequest) -> WriteResponse:
    """Write one frame, as-is, to every bulk OUT endpoint."""
    payload = _decode_payload(req)
    if len(payload) > MAX_FRAME_BYTES:
        raise HTTPException(status_code=413, detail="Frame too large (max 64 KB)")

    result = get_bridge().write_frame(payload)
    if not result.connected:
        raise HTTPException(status_code=503, detail="Could not connect to the device")
    return WriteResponse(
        ok=result.ok,
        length=result.frame_length,
        endpoints={f"0x{a:02x}": n for a, n in result.per_endpoint.items()},
        errors={f"0x{a:02x}": msg for a, msg in result.errors.items()},
    )


@app.get("/bridge/frames")
def get_frames(limit: int = 100) -> list[FrameResponse]:
    """Pop up to *limit* received frames in arrival order."""
    if limit <= 0 or limit > MAX_FRAMES_PER_POLL:
        raise HTTPException(status_code=400,
                            detail=f"limit must be 1..{MAX_FRAMES_PER_POLL}")
    bridge = get_bridge()
    frames = []
    while len(frames) < limit:
        frame = bridge.pop_frame()
        if frame is None:
            break
        frames.append(_frame_to_response(frame))
    return frames
