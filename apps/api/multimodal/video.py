import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import ffmpeg

logger = logging.getLogger(__name__)


@dataclass
class MediaProbe:
    playable: bool
    duration: float
    width: int = 0
    height: int = 0
    rotation: int = 0

    @property
    def orientation(self) -> str:
        width, height = self.width, self.height
        if abs(self.rotation) in (90, 270):
            width, height = height, width
        if not width or not height:
            return "unknown"
        if width == height:
            return "square"
        return "portrait" if height > width else "landscape"


def _stream_rotation(stream: Dict[str, Any]) -> int:
    tags = stream.get("tags") or {}
    if "rotate" in tags:
        try:
            return int(tags["rotate"])
        except (TypeError, ValueError):
            return 0
    for side_data in stream.get("side_data_list") or []:
        if "rotation" in side_data:
            try:
                return int(side_data["rotation"])
            except (TypeError, ValueError):
                return 0
    return 0


def probe_media(source: str) -> MediaProbe:
    """
    Probe a local path or stream URL for playability, duration and frame size.
    Raises ffmpeg.Error when the source cannot be read.
    """
    probe = ffmpeg.probe(source)
    streams = probe.get("streams", [])
    video_stream: Optional[Dict[str, Any]] = next(
        (stream for stream in streams if stream.get("codec_type") == "video"),
        None,
    )
    duration = float(probe.get("format", {}).get("duration", 0.0) or 0.0)
    if duration <= 0 and video_stream is not None:
        duration = float(video_stream.get("duration", 0.0) or 0.0)

    if video_stream is None:
        return MediaProbe(playable=False, duration=max(duration, 0.0))

    return MediaProbe(
        playable=True,
        duration=max(duration, 0.0),
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        rotation=_stream_rotation(video_stream),
    )


def get_video_duration_seconds(video_path: str) -> int:
    """
    Probe video metadata and return duration in whole seconds.
    """
    try:
        return max(0, int(round(probe_media(video_path).duration)))
    except Exception as e:
        logger.warning(f"Could not probe video duration for {video_path}: {e}")
        return 0


def extract_thumbnail(video_path: str, output_path: str, at_seconds: float = 1.0) -> str:
    """
    Grab a single JPEG frame from the recording for the reel thumbnail.
    Returns path to the image.
    """
    output_dir = os.path.dirname(output_path)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir)

    try:
        # ffmpeg -ss 1 -i video.mp4 -frames:v 1 thumb.jpg
        (
            ffmpeg
            .input(video_path, ss=at_seconds)
            .output(output_path, vframes=1)
            .overwrite_output()
            .run(quiet=True)
        )
        return output_path
    except ffmpeg.Error as e:
        logger.error(f"Error extracting thumbnail: {e.stderr.decode() if e.stderr else str(e)}")
        raise
