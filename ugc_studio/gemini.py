"""
Gemini integration for UGC script writing.

Writes the spoken narration only. The pipeline splits it into 8-second
scenes itself, so the prompt asks for 16-22 words per scene but nothing
downstream depends on the model respecting scene boundaries.
"""

import os
import math
import logging

import httpx

from . import metrics
from .errors import ProviderRequestError, ValidationError

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

SCENE_SECONDS = 8
MIN_WORDS_PER_SCENE = 16
MAX_WORDS_PER_SCENE = 22

LANGUAGE_NAMES = {
    "bg": "Bulgarian",
    "en": "English",
    "de": "German",
    "es": "Spanish",
    "fr": "French",
    "it": "Italian",
}

# UGC structure templates keyed by scene count
UGC_STRUCTURES = {
    1: "Hook/CTA Combo - Direct, high-energy pitch",
    2: "Scene 1: Hook + Interest Peak | Scene 2: Value + CTA",
    3: "Scene 1: Hook | Scene 2: Interest Peak + Value | Scene 3: Social Proof + CTA",
    4: "Scene 1: Hook + Problem Tease | Scene 2: Interest Peak + Problem Deep Dive | Scene 3: Value + Solution | Scene 4: Social Proof + CTA",
    5: "Scene 1: Hook + Attention Grab | Scene 2: Problem Details + Interest Peak | Scene 3: Solution + Value | Scene 4: Social Proof + Results | Scene 5: Strong CTA + Urgency",
    6: "Scene 1: Hook | Scene 2: Problem + Interest Peak | Scene 3: Problem Deep Dive + Empathy | Scene 4: Solution + Key Value | Scene 5: Social Proof + Results | Scene 6: Benefits Recap + CTA",
    7: "Scene 1: Hook | Scene 2: Problem Introduction | Scene 3: Problem Agitation + Interest Peak | Scene 4: Solution + Value | Scene 5: Solution Deep Dive | Scene 6: Social Proof + Results | Scene 7: Benefits + Strong CTA",
    8: "Scene 1: Hook | Scene 2: Problem Introduction | Scene 3: Problem Expansion + Interest Peak | Scene 4: Solution Introduction | Scene 5: Solution Value Proposition | Scene 6: Social Proof Part 1 | Scene 7: Social Proof Part 2 + Results | Scene 8: Benefits Recap + Urgent CTA",
}

SYSTEM_PROMPT = """You are an expert UGC (User Generated Content) copywriter specialist.

YOUR ROLE:
Generate a {language}-language UGC video script ONLY. Do NOT include any instructions about avatar behavior, camera angles, or visual directions.

SCRIPT REQUIREMENTS:
- Language: {language} ONLY
- Total duration: {duration} seconds
- Number of scenes: {scene_count} (each scene is exactly 8 seconds)
- Word count: {min_words}-{max_words} words total (16-22 words per scene)
- Each scene MUST end on a complete word (never cut mid-word)
- Natural, conversational speaking pace

UGC STRUCTURE FOR {scene_count} SCENES:
{structure}

UGC PRINCIPLES:
- Sound authentic and relatable (like a real person recommending to a friend)
- Focus on benefits and real-world use
- Use natural language, avoid corporate/salesy tone
- Create emotional connection
- Be specific and credible

OUTPUT FORMAT:
Return ONLY the script text. No scene numbers, no directions, no stage instructions. Just the words the avatar will speak, naturally paced for {duration} seconds."""

USER_PROMPT = """Product: {product_name}
{description_line}Tone: {tone}

Generate a {duration}-second UGC video script in {language} following the {scene_count}-scene structure defined above.

CRITICAL RULES:
- ONLY {language} language
- {min_words}-{max_words} words total
- Each 8-second scene should be approximately 16-22 words
- End each scene on a complete word
- Natural, authentic voice
- NO avatar behavior descriptions
- NO camera instructions
- ONLY the spoken script text"""


def _api_url(model: str) -> str:
    return f"{API_BASE}/models/{model}:generateContent?key={GEMINI_API_KEY}"


def build_prompts(
    product_name: str,
    product_description: str | None,
    tone: str,
    duration: int,
    language: str = "bg",
) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for a script request."""
    scene_count = math.ceil(duration / SCENE_SECONDS)
    values = {
        "language": LANGUAGE_NAMES.get(language, language),
        "duration": duration,
        "scene_count": scene_count,
        "min_words": scene_count * MIN_WORDS_PER_SCENE,
        "max_words": scene_count * MAX_WORDS_PER_SCENE,
        "structure": UGC_STRUCTURES.get(scene_count, UGC_STRUCTURES[8]),
        "product_name": product_name,
        "description_line": f"Description: {product_description}\n" if product_description else "",
        "tone": tone,
    }
    return SYSTEM_PROMPT.format(**values), USER_PROMPT.format(**values)


def generate_script(
    product_name: str,
    product_description: str | None = None,
    tone: str = "friendly",
    duration: int = 32,
    language: str = "bg",
) -> str:
    """Ask Gemini for the narration of a `duration`-second UGC video."""
    if not product_name:
        raise ValidationError("Missing productName")
    if not GEMINI_API_KEY:
        raise ProviderRequestError("GEMINI_API_KEY not set", provider="gemini")

    system_prompt, user_prompt = build_prompts(product_name, product_description, tone, duration, language)
    body = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        "generationConfig": {"temperature": 0.7, "maxOutputTokens": 800},
    }

    metrics.inc_counter("provider.gemini.script")
    try:
        resp = httpx.post(_api_url(GEMINI_MODEL), json=body, timeout=60)
    except httpx.HTTPError as e:
        metrics.record_error("gemini", "transport", str(e))
        raise ProviderRequestError(f"Gemini request failed: {e}", provider="gemini") from e

    if resp.status_code != 200:
        metrics.record_error("gemini", f"http_{resp.status_code}", resp.text[:300])
        raise ProviderRequestError(
            f"Gemini API error {resp.status_code}: {resp.text[:500]}",
            provider="gemini",
            http_status=resp.status_code,
        )

    try:
        text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ProviderRequestError(f"No script generated by Gemini: {resp.text[:200]}", provider="gemini") from e

    script = text.strip()
    if not script:
        raise ProviderRequestError("No script generated by Gemini", provider="gemini")

    logger.info(f"[Gemini] Script generated: {len(script.split())} words for {duration}s")
    return script
