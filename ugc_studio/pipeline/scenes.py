"""
Scene arithmetic: how many 8-second scenes a duration needs and which words
each scene speaks.
"""

import math
import logging

logger = logging.getLogger(__name__)

SCENE_SECONDS = 8


def scene_count(duration_seconds: int) -> int:
    """ceil(duration / 8). Every scene covers exactly 8 seconds."""
    if duration_seconds <= 0:
        raise ValueError(f"duration must be positive, got {duration_seconds}")
    return math.ceil(duration_seconds / SCENE_SECONDS)


def split_script(script: str, total_scenes: int) -> list[str]:
    """
    Split narration into `total_scenes` consecutive word runs.

    Each scene gets ceil(words / scenes) words; trailing scenes may be
    shorter or empty when the script is short. The result always has
    exactly `total_scenes` entries and is never recomputed afterwards.
    """
    words = script.split()
    per_scene = math.ceil(len(words) / total_scenes) if words else 0

    scenes = []
    for i in range(total_scenes):
        scenes.append(" ".join(words[i * per_scene:(i + 1) * per_scene]))

    logger.info(f"[Script Split] Total words: {len(words)}, Scenes: {total_scenes}, Words per scene: ~{per_scene}")
    return scenes
