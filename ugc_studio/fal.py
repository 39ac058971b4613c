"""
fal.ai ffmpeg-api integration via the queue REST API.

Two capabilities:
  - extract-frame: grab the last frame of a finished scene (seed for the next one)
  - compose:       concatenate scene clips into the final video + thumbnail

fal.ai queue protocol:
  POST /{endpoint}                       → { request_id, ... }
  GET  /requests/{request_id}/status     → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /requests/{request_id}            → result payload

Single attempts only; the caller's polling loop is the retry.
"""

import os
import time
import logging

import requests

from . import metrics
from .errors import ProviderRequestError

logger = logging.getLogger(__name__)

FAL_KEY = os.environ.get("FAL_KEY") or os.environ.get("FAL_API_KEY", "")
FAL_API_BASE = "https://queue.fal.run/fal-ai/ffmpeg-api"
REQUEST_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "60"))

SCENE_SECONDS = 8


def _get_headers() -> dict:
    """Return auth headers for fal.ai."""
    if not FAL_KEY:
        raise ProviderRequestError("FAL_KEY not set", provider="fal")
    return {
        "Authorization": f"Key {FAL_KEY}",
        "Content-Type": "application/json",
    }


def _unwrap(data):
    # Some fal endpoints answer with a one-element list
    if isinstance(data, list):
        return data[0] if data else {}
    return data


def _request(method: str, url: str, op: str, **kwargs) -> dict:
    headers = _get_headers()
    metrics.inc_counter(f"provider.fal.{op}")
    started = time.time()
    try:
        resp = requests.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.exceptions.RequestException as e:
        metrics.record_error("fal", "transport", str(e))
        raise ProviderRequestError(f"fal.ai request failed: {e}", provider="fal") from e
    finally:
        metrics.record_latency(f"provider.fal.{op}", (time.time() - started) * 1000)

    if resp.status_code >= 400:
        metrics.record_error("fal", f"http_{resp.status_code}", resp.text[:300])
        raise ProviderRequestError(
            f"fal.ai {resp.status_code}: {resp.text[:200]}",
            provider="fal",
            http_status=resp.status_code,
        )

    try:
        return _unwrap(resp.json())
    except ValueError as e:
        metrics.record_error("fal", "bad_json", resp.text[:300])
        raise ProviderRequestError(f"fal.ai returned non-JSON: {resp.text[:200]}", provider="fal") from e


def _submit(endpoint: str, input_data: dict) -> str:
    data = _request("POST", f"{FAL_API_BASE}/{endpoint}", "submit", json=input_data)
    request_id = data.get("request_id")
    if not request_id:
        raise ProviderRequestError(f"No request_id in fal.ai response: {data}", provider="fal", detail=data)
    logger.info(f"[fal] {endpoint} queued: request_id={request_id}")
    return request_id


def extract_last_frame(video_url: str) -> str:
    """Queue last-frame extraction for a scene video. Returns the request_id."""
    logger.info(f"[fal] Extracting last frame from {video_url[:80]}")
    return _submit("extract-frame", {"video_url": video_url, "frame_type": "last"})


def combine_videos(scene_urls: list[str]) -> str:
    """Queue composition of scene clips, back to back. Returns the request_id."""
    keyframes = [
        {"url": url, "timestamp": index * SCENE_SECONDS, "duration": SCENE_SECONDS}
        for index, url in enumerate(scene_urls)
    ]
    logger.info(f"[fal] Composing {len(scene_urls)} scenes")
    return _submit("compose", {"tracks": [{"id": "1", "type": "video", "keyframes": keyframes}]})


def get_request_status(request_id: str) -> dict:
    """Queue status block for a request."""
    return _request("GET", f"{FAL_API_BASE}/requests/{request_id}/status", "status")


def get_request_result(request_id: str) -> dict:
    """Result payload of a completed request."""
    return _request("GET", f"{FAL_API_BASE}/requests/{request_id}", "result")
