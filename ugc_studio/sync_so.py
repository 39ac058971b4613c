"""
Sync.so lip-sync integration.

Re-renders mouth movement of a finished scene against the scene's narration,
voiced through ElevenLabs on the Sync.so side (lipsync-2, loop sync mode).
"""

import os
import time
import logging

import requests

from . import metrics
from .errors import ProviderRequestError

logger = logging.getLogger(__name__)

SYNC_SO_API_KEY = os.environ.get("SYNC_SO_API_KEY", "")
SYNC_SO_BASE_URL = "https://api.sync.so/v2"
REQUEST_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "60"))

MODEL = "lipsync-2"

# Voice ID for the Maria avatar, used as the default voice
MARIA_VOICE_ID = "M1ydWt7KnBCiuv4CnEDC"

AVATAR_VOICES = {
    "maria": MARIA_VOICE_ID,
    "avatar_maria": MARIA_VOICE_ID,
}


def voice_for_avatar(avatar_id: str | None) -> str:
    """Pick the ElevenLabs voice for an avatar, defaulting to Maria."""
    return AVATAR_VOICES.get((avatar_id or "").lower(), MARIA_VOICE_ID)


def _request(method: str, url: str, op: str, **kwargs) -> dict:
    if not SYNC_SO_API_KEY:
        raise ProviderRequestError("SYNC_SO_API_KEY not set", provider="sync")

    headers = {"x-api-key": SYNC_SO_API_KEY, "Content-Type": "application/json"}
    metrics.inc_counter(f"provider.sync.{op}")
    started = time.time()
    try:
        resp = requests.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.exceptions.RequestException as e:
        metrics.record_error("sync", "transport", str(e))
        raise ProviderRequestError(f"Sync.so request failed: {e}", provider="sync") from e
    finally:
        metrics.record_latency(f"provider.sync.{op}", (time.time() - started) * 1000)

    if resp.status_code >= 400:
        metrics.record_error("sync", f"http_{resp.status_code}", resp.text[:300])
        raise ProviderRequestError(
            f"Sync.so {resp.status_code}: {resp.text[:200]}",
            provider="sync",
            http_status=resp.status_code,
        )
    try:
        return resp.json()
    except ValueError as e:
        metrics.record_error("sync", "bad_json", resp.text[:300])
        raise ProviderRequestError(f"Sync.so returned non-JSON: {resp.text[:200]}", provider="sync") from e


def start_lip_sync(video_url: str, script: str, voice_id: str | None = None) -> str:
    """Start a lip-sync generation. Returns the Sync.so generation id."""
    voice_id = voice_id or MARIA_VOICE_ID
    logger.info(f"[Sync.so] Starting lip sync for {video_url[:50]}... voice={voice_id}")

    payload = {
        "model": MODEL,
        "input": [
            {"type": "video", "url": video_url},
            {
                "type": "text",
                "provider": {
                    "name": "elevenlabs",
                    "voiceId": voice_id,
                    "script": script,
                },
            },
        ],
        "options": {"sync_mode": "loop"},
    }

    data = _request("POST", f"{SYNC_SO_BASE_URL}/generate", "submit", json=payload)
    task_id = data.get("id")
    if not task_id:
        raise ProviderRequestError(f"Sync.so returned no id: {data}", provider="sync", detail=data)

    logger.info(f"[Sync.so] Lip sync task started: {task_id}")
    return task_id


def get_generation(task_id: str) -> dict:
    """Fetch a generation: {id, status, outputUrl?, error?}."""
    return _request("GET", f"{SYNC_SO_BASE_URL}/generate/{task_id}", "status")
