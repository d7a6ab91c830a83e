import os
import logging
import ffmpeg
from openai import OpenAI
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {".mp3", ".m4a", ".wav", ".ogg", ".webm"}


def extract_audio(video_path: str, output_path: str) -> str:
    """
    Extract audio from video file to MP3 format.
    Returns path to audio file.
    """
    try:
        # ffmpeg -i video.mp4 -q:a 0 -map a output.mp3
        (
            ffmpeg
            .input(video_path)
            .output(output_path, format='mp3', audio_bitrate='32k') # Low bitrate for API size limit
            .overwrite_output()
            .run(quiet=True)
        )
        return output_path
    except ffmpeg.Error as e:
        logger.error(f"Error extracting audio: {e.stderr.decode() if e.stderr else str(e)}")
        raise


def ensure_audio_file(media_path: str) -> str:
    """Return an audio file for ``media_path``, extracting it from video when needed."""
    root, ext = os.path.splitext(media_path)
    if ext.lower() in AUDIO_EXTENSIONS:
        return media_path
    return extract_audio(media_path, f"{root}.mp3")


def transcribe_audio(audio_path: str, api_key: Optional[str] = None) -> str:
    """
    Transcribe one audio chunk using OpenAI Whisper and return its text.
    """
    api_key = settings.OPENAI_API_KEY if api_key is None else api_key
    # Mock for testing if key is invalid
    if not api_key or "your_" in api_key or api_key == "test-key":
        logger.warning("Using MOCK transcription because OpenAI API Key is missing or invalid.")
        return "Alright everyone, let's start with jumping jacks, then three sets of squats and a plank hold."

    client = OpenAI(api_key=api_key, timeout=settings.OPENAI_TIMEOUT_SECONDS)

    try:
        with open(audio_path, "rb") as audio_file:
            transcript = client.audio.transcriptions.create(
                model="whisper-1",
                file=audio_file,
                response_format="text",
            )
        return str(transcript).strip()
    except Exception as e:
        logger.error(f"Error transcribing audio: {e}")
        raise
