"""
Kie.ai Veo 3 integration — talking-avatar scene generation.

Each scene is one 8-second Veo clip:
  - Scene 1 seeds from the avatar image (+ optional product image)
    using REFERENCE_2_VIDEO.
  - Scene N>1 seeds from the last frame of the previous scene using
    FIRST_AND_LAST_FRAMES_2_VIDEO, with continuation framing cues.

Calls are single attempts. Retry is driven by the caller's polling cadence,
so transport failures surface as ProviderRequestError.
"""

import os
import time
import random
import logging

import requests

from . import metrics
from .errors import ProviderRequestError

logger = logging.getLogger(__name__)

KIE_API_KEY = os.environ.get("KIE_API_KEY") or os.environ.get("KIE_AI_API_KEY", "")
KIE_API_BASE = "https://api.kie.ai/api/v1/veo"
REQUEST_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "60"))

MODEL = "veo3_fast"
FIRST_SCENE_MODE = "REFERENCE_2_VIDEO"
CONTINUATION_MODE = "FIRST_AND_LAST_FRAMES_2_VIDEO"

# successFlag values on record-info
FLAG_GENERATING = 0
FLAG_SUCCESS = 1
FLAG_FAILED = {2, 3}


def build_director_instructions(has_product: bool, is_continuation: bool) -> str:
    """UGC framing cues appended to the narration prompt."""
    instructions = ""

    instructions += " IMPORTANT: No voiceover or narration. Only the avatar speaks directly to camera. No background voice."

    instructions += (
        " The video should look like a smartphone selfie, with the camera about 50cm from the avatar."
        " Focus mostly on the face and natural expressions. The avatar breathes naturally with subtle"
        " shoulder movement and blinks every few seconds. Facial expressions should match the emotional"
        " tone of the message."
    )

    if has_product:
        instructions += (
            " The left hand holds the product at chest level, about 15cm from camera with the label visible."
            " The right hand rests out of frame. At the end, the left hand lowers the product smoothly."
            " CRITICAL: The product MUST be clearly visible in the final frame of the scene. Position the"
            " product prominently in the last 2 seconds so it can be used as the starting frame for the next scene."
        )
    else:
        instructions += (
            " Both hands rest out of frame. If a small gesture is needed, just the right hand can briefly"
            " appear and quickly exit within 2 seconds."
        )

    instructions += (
        " CRITICAL: The avatar must finish speaking on a COMPLETE WORD - never cut mid-word."
        " The final spoken word should be clearly articulated."
        " At the scene end, the avatar holds a comfortable, still pose for about 1.5 seconds, like pressing"
        " pause mid-conversation. Avoid fading, zooming, waving or looking away. The camera should be"
        " completely still for the final 2 seconds, with the avatar centered and visible for smooth transition."
    )

    if not is_continuation:
        instructions += (
            " Start with a medium close-up showing shoulders to head. Make direct eye contact within the"
            " first 2 seconds. Use a natural handheld camera feel."
        )
    else:
        instructions += " Continue the talking-head style from before with a slight camera angle change."

    instructions += (
        " Deliver the message naturally at a conversational pace with 16-22 words,"
        " including natural pauses for breathing."
    )

    return instructions


def _request(method: str, path: str, op: str, **kwargs) -> dict:
    """Single Kie.ai call. Unwraps the {code, msg, data} envelope."""
    if not KIE_API_KEY:
        raise ProviderRequestError("KIE_API_KEY not set", provider="kie")

    headers = kwargs.pop("headers", {})
    headers.setdefault("Authorization", f"Bearer {KIE_API_KEY}")
    url = f"{KIE_API_BASE}/{path}"

    metrics.inc_counter(f"provider.kie.{op}")
    started = time.time()
    try:
        response = requests.request(method, url, headers=headers, timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.exceptions.RequestException as e:
        metrics.record_error("kie", "transport", str(e))
        raise ProviderRequestError(f"Kie.ai request failed: {e}", provider="kie") from e
    finally:
        metrics.record_latency(f"provider.kie.{op}", (time.time() - started) * 1000)

    if response.status_code >= 400:
        metrics.record_error("kie", f"http_{response.status_code}", response.text[:300])
        raise ProviderRequestError(
            f"Kie.ai {response.status_code}: {response.text[:200]}",
            provider="kie",
            http_status=response.status_code,
        )

    try:
        body = response.json()
    except ValueError as e:
        metrics.record_error("kie", "bad_json", response.text[:300])
        raise ProviderRequestError(f"Kie.ai returned non-JSON: {response.text[:200]}", provider="kie") from e

    if body.get("code") != 200:
        metrics.record_error("kie", "api_error", str(body.get("msg")))
        raise ProviderRequestError(f"Kie.ai API error: {body.get('msg')}", provider="kie", detail=body)

    return body.get("data") or {}


def generate_video(
    prompt: str,
    image_url: str,
    aspect_ratio: str = "9:16",
    product_url: str | None = None,
    is_continuation: bool = False,
    callback_url: str | None = None,
) -> str:
    """
    Start one Veo scene generation. Returns the Kie.ai taskId.

    The continuation flag only changes how the request is built;
    callers decide it from the scene number.
    """
    image_urls = [image_url]
    if product_url:
        image_urls.append(product_url)

    payload = {
        "prompt": prompt + build_director_instructions(bool(product_url), is_continuation),
        "imageUrls": image_urls,
        "model": MODEL,
        "aspectRatio": aspect_ratio,
        "seeds": random.randint(10000, 99999),
        "enableFallback": False,
        "enableTranslation": True,
        "generationType": CONTINUATION_MODE if is_continuation else FIRST_SCENE_MODE,
    }
    if callback_url:
        payload["callBackUrl"] = callback_url

    logger.info(
        f"[Kie.ai] Generating {'continuation' if is_continuation else 'first'} scene: "
        f"~{len(prompt.split())} words, {len(image_urls)} image(s), aspect={aspect_ratio}"
    )

    data = _request("POST", "generate", "submit", json=payload)
    task_id = data.get("taskId")
    if not task_id:
        raise ProviderRequestError(f"Kie.ai returned no taskId: {data}", provider="kie", detail=data)

    logger.info(f"[Kie.ai] Scene task started: {task_id}")
    return task_id


def get_task_status(task_id: str) -> dict:
    """Return the record-info `data` block for a task."""
    return _request("GET", "record-info", "status", params={"taskId": task_id})


def extract_video_url(record: dict) -> str | None:
    """Pull the first result URL out of a record-info block."""
    response = record.get("response") or {}
    urls = response.get("resultUrls") or []
    if urls:
        return urls[0]
    return record.get("resultUrl") or record.get("videoUrl")
