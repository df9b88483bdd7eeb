"""WAV packaging for the raw PCM returned by the speech model."""

from __future__ import annotations

import base64
import binascii
import io
import wave

SAMPLE_RATE = 24000
CHANNELS = 1
SAMPLE_WIDTH = 2  # 16-bit


def pcm_to_wav(base64_pcm: str, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Wrap base64 mono 16-bit PCM in a WAV container."""
    try:
        pcm = base64.b64decode(base64_pcm, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 audio: {e}") from e
    if len(pcm) % SAMPLE_WIDTH:
        # drop a trailing partial sample
        pcm = pcm[: len(pcm) - len(pcm) % SAMPLE_WIDTH]

    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buf.getvalue()
