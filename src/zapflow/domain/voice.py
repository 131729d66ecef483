"""Audio markers in assistant replies.

The system prompt teaches the model two markers:
- ``audio: <text>``                   speak <text> with the cloned voice
- ``audiogeonomedoaudio: <trigger>``  send a pre-recorded clip from the library

Marker lines are cut from the text reply and returned as instructions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

LIBRARY_MARKER = "audiogeonomedoaudio"

# "audio:" must not match the tail of the library marker
_SYNTH_PATTERN = re.compile(r"(?<![\w])audio:[ \t]*(.+?)[ \t]*(?=\n|$)", re.IGNORECASE)
_LIBRARY_PATTERN = re.compile(rf"{LIBRARY_MARKER}:[ \t]*(.+?)[ \t]*(?=\n|$)", re.IGNORECASE)


@dataclass(frozen=True)
class AudioClip:
    trigger: str
    name: str
    url: str


@dataclass(frozen=True)
class AudioInstruction:
    kind: Literal["synthesize", "library"]
    text: str
    clip: AudioClip | None = None


@dataclass(frozen=True)
class AudioPlan:
    text: str
    instructions: tuple[AudioInstruction, ...] = ()


def find_clip(trigger: str, library: tuple[AudioClip, ...]) -> AudioClip | None:
    wanted = trigger.strip()
    for clip in library:
        if clip.trigger in (wanted, f"{LIBRARY_MARKER}{wanted}"):
            return clip
    lowered = wanted.lower()
    for clip in library:
        if lowered and lowered in clip.name.lower():
            return clip
    return None


def plan_audio(text: str, library: tuple[AudioClip, ...] = ()) -> AudioPlan:
    """Split a reply into plain text and audio instructions, in reply order."""
    found: list[tuple[int, AudioInstruction | None]] = []

    for match in _LIBRARY_PATTERN.finditer(text):
        clip = find_clip(match.group(1), library)
        instruction = AudioInstruction(kind="library", text=match.group(1), clip=clip) if clip else None
        found.append((match.start(), instruction))
    for match in _SYNTH_PATTERN.finditer(text):
        found.append((match.start(), AudioInstruction(kind="synthesize", text=match.group(1))))

    if not found:
        return AudioPlan(text=text.strip())

    remaining = _LIBRARY_PATTERN.sub("", text)
    remaining = _SYNTH_PATTERN.sub("", remaining)
    lines = [line.rstrip() for line in remaining.splitlines()]
    cleaned = "\n".join(lines)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    found.sort(key=lambda item: item[0])
    return AudioPlan(
        text=cleaned,
        instructions=tuple(instruction for _, instruction in found if instruction is not None),
    )


def audio_prompt_instructions(voice_enabled: bool, library: tuple[AudioClip, ...]) -> str:
    """Extra system-prompt lines describing the markers, or "" when unused."""
    if not voice_enabled and not library:
        return ""
    lines = ["INSTRUÇÕES DE ÁUDIO:"]
    if voice_enabled:
        lines.append("- Para responder com áudio gerado por IA, use: audio: [sua resposta]")
    if library:
        lines.append(f"- Para usar áudios pré-gravados, use: {LIBRARY_MARKER}: [trigger]")
        available = ", ".join(f"{clip.trigger} ({clip.name})" for clip in library)
        lines.append(f"- Áudios disponíveis: {available}")
    return "\n".join(lines)
