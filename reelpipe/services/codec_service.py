# Codec service - FFprobe metadata, FFmpeg thumbnails and web compression with progress

import subprocess
import os
import json
import shutil
import logging
from typing import Optional, Dict, Any, Callable

from reelpipe.core.config import settings
from reelpipe.core.errors import CodecError, CodecTimeoutError, FailureKind
from reelpipe.services.file_service import MediaStorage, media_storage

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 30  # seconds
THUMBNAIL_TIMEOUT = 60  # seconds
MIN_THUMBNAIL_BYTES = 1024

# Inputs already in this shape are copied instead of re-encoded
MAX_PASSTHROUGH_BITRATE = 5_000_000  # 5 Mbps
MAX_PASSTHROUGH_WIDTH = 1080


def _parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse FFprobe frame rate strings such as "30/1" or "29.97" """
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/")
            return round(float(num) / float(den), 2) if float(den) != 0 else None
        return round(float(value), 2)
    except (ValueError, ZeroDivisionError):
        return None


def needs_compression(metadata: Dict[str, Any]) -> bool:
    """True unless the input is already H.264, <= 5 Mbps and <= 1080px wide"""
    return (
        metadata.get("codec") != "h264"
        or (metadata.get("bitrate") or 0) > MAX_PASSTHROUGH_BITRATE
        or (metadata.get("width") or 0) > MAX_PASSTHROUGH_WIDTH
    )


def encoding_profile(width: int) -> Dict[str, Any]:
    """Target width and CRF for the delivery encode"""
    if width <= 720:
        return {"target_width": 720, "crf": 26}
    return {"target_width": 1080, "crf": 28}


class CodecService:
    """Service for reel media operations using FFmpeg"""

    def __init__(self, storage: Optional[MediaStorage] = None, threads: Optional[int] = None):
        self.storage = storage or media_storage
        self.threads = threads or settings.ffmpeg_threads or max(1, (os.cpu_count() or 2) // 2)
        self._ffmpeg_path = None
        self._ffprobe_path = None

    @property
    def ffmpeg_path(self) -> str:
        if self._ffmpeg_path is None:
            self._ffmpeg_path = self._find_binary("ffmpeg")
        return self._ffmpeg_path

    @property
    def ffprobe_path(self) -> str:
        if self._ffprobe_path is None:
            self._ffprobe_path = self._find_binary("ffprobe")
        return self._ffprobe_path

    def _find_binary(self, name: str) -> str:
        """Find an FFmpeg binary path"""
        # Check common locations
        for path in [f"/usr/bin/{name}", f"/usr/local/bin/{name}", name]:
            try:
                result = subprocess.run([path, "-version"], capture_output=True, timeout=5)
                if result.returncode == 0:
                    return path
            except (FileNotFoundError, subprocess.TimeoutExpired):
                continue
        raise CodecError(f"{name} not found. Please install FFmpeg.")

    def get_video_metadata(self, input_path: str) -> Dict[str, Any]:
        """
        Get video metadata using FFprobe

        Returns:
            Dict with duration, size, width, height, codec, bitrate, fps,
            has_audio, audio_codec, rotation
        """
        if not os.path.exists(input_path):
            raise CodecError(f"Video file not found: {input_path}", FailureKind.FATAL)

        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise CodecTimeoutError("FFprobe timeout while reading metadata")

        if result.returncode != 0:
            raise CodecError(f"Failed to get video metadata: {result.stderr.strip()}")

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise CodecError(f"Failed to parse FFprobe output: {e}")

        video_stream = None
        audio_stream = None
        for stream in data.get("streams", []):
            if stream.get("codec_type") == "video" and not video_stream:
                video_stream = stream
            elif stream.get("codec_type") == "audio" and not audio_stream:
                audio_stream = stream

        if not video_stream:
            raise CodecError("No video stream found in file", FailureKind.FATAL)

        format_info = data.get("format", {})
        bitrate = format_info.get("bit_rate") or video_stream.get("bit_rate")

        metadata = {
            "duration": float(format_info.get("duration") or 0),
            "size": int(format_info.get("size") or 0),
            "width": int(video_stream.get("width") or 0),
            "height": int(video_stream.get("height") or 0),
            "codec": video_stream.get("codec_name", "unknown"),
            "bitrate": int(bitrate) if bitrate else None,
            "fps": _parse_frame_rate(video_stream.get("avg_frame_rate") or video_stream.get("r_frame_rate")),
            "has_audio": audio_stream is not None,
            "audio_codec": audio_stream.get("codec_name") if audio_stream else None,
            "rotation": int(video_stream.get("tags", {}).get("rotate", 0) or 0),
        }

        logger.debug(
            f"Video metadata extracted for {os.path.basename(input_path)}: "
            f"{metadata['duration']}s {metadata['width']}x{metadata['height']} {metadata['codec']}"
        )
        return metadata

    def generate_thumbnail(
        self,
        video_path: str,
        output_file_name: str,
        timestamp: float = 1.0,
        width: int = 640,
        quality: int = 90
    ) -> str:
        """
        Grab a single JPEG frame from the video

        Args:
            video_path: Path to the source video
            output_file_name: Thumbnail file name inside the thumbnails directory
            timestamp: Seek position in seconds (0.5s for sub-second videos)
            width: Output width, height keeps the aspect ratio
            quality: JPEG quality 1-100

        Returns:
            Public URL of the thumbnail
        """
        metadata = self.get_video_metadata(video_path)
        if metadata["duration"] < 1:
            timestamp = 0.5

        self.storage.thumbnail_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.storage.thumbnail_path(output_file_name)

        # FFmpeg JPEG qscale runs 2 (best) .. 31 (worst)
        qscale = 2 + round((100 - max(1, min(100, quality))) * 29 / 100)

        cmd = [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{timestamp:.2f}",
            "-i", video_path,
            "-vframes", "1",
            "-vf", f"scale={width}:-2",
            "-q:v", str(qscale),
            output_path
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=THUMBNAIL_TIMEOUT)
        except subprocess.TimeoutExpired:
            raise CodecTimeoutError("FFmpeg timeout while generating thumbnail")

        if result.returncode != 0:
            raise CodecError(f"Failed to generate thumbnail: {result.stderr.strip()[-500:]}")

        try:
            size = os.path.getsize(output_path)
        except OSError as e:
            raise CodecError(f"Thumbnail verification failed: {e}")
        if size < MIN_THUMBNAIL_BYTES:
            raise CodecError("Thumbnail verification failed: generated thumbnail is too small")

        logger.info(f"Thumbnail generated: {output_file_name} ({size / 1024:.2f}KB)")
        return self.storage.thumbnail_url(output_file_name)

    def compress_video(
        self,
        input_path: str,
        output_file_name: str,
        progress_callback: Optional[Callable[[float], None]] = None
    ) -> str:
        """
        Compress video to H.264/AAC MP4 optimized for web playback

        Args:
            input_path: Path to input video file
            output_file_name: Output file name inside the processed directory
            progress_callback: Optional callback(percent) with 0-100 stage progress;
                100 is only reported once the output is complete

        Returns:
            Public URL of the compressed video
        """
        metadata = self.get_video_metadata(input_path)
        self.storage.processed_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.storage.processed_path(output_file_name)

        if not needs_compression(metadata):
            logger.info("Video already optimized, copying instead of re-encoding")
            shutil.copyfile(input_path, output_path)
            if progress_callback:
                progress_callback(100)
            return self.storage.processed_url(output_file_name)

        profile = encoding_profile(metadata["width"])
        total_duration = metadata["duration"]

        cmd = [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-i", input_path,
            # Video settings
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", str(profile["crf"]),
            "-profile:v", "high",
            "-level", "4.2",
            "-vf", f"scale={profile['target_width']}:-2:flags=lanczos",
            "-pix_fmt", "yuv420p",
            "-g", "60",  # 2s keyframe interval
            "-threads", str(self.threads),
            # Audio settings
            "-c:a", "aac",
            "-b:a", "128k",
            "-ar", "44100",
            # Output format
            "-movflags", "+faststart",  # Enable streaming
            "-map_metadata", "-1",
            "-f", "mp4",
            # Progress output
            "-progress", "pipe:1",
            "-nostats",
            output_path
        ]

        logger.info(f"Starting compression: {input_path} -> {output_path} (crf {profile['crf']})")

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True
        )

        # Parse progress from FFmpeg output; the encoder must not outlive a failed read loop
        try:
            while True:
                line = process.stdout.readline()
                if not line and process.poll() is not None:
                    break

                if line.startswith("out_time_ms="):
                    try:
                        current_time = int(line.split("=")[1].strip()) / 1_000_000
                    except (ValueError, IndexError):
                        continue
                    if total_duration > 0 and progress_callback:
                        # Never report 100% until the process has exited cleanly
                        progress_callback(min(99, (current_time / total_duration) * 100))
        except BaseException:
            process.kill()
            process.wait()
            logger.warning(f"Compression aborted, FFmpeg process {process.pid} killed")
            raise

        process.wait()

        if process.returncode != 0:
            stderr = process.stderr.read()
            raise CodecError(f"Video compression failed with code {process.returncode}: {stderr[-500:]}")

        output_size = os.path.getsize(output_path)
        if metadata["size"]:
            logger.info(
                f"Video compressed: {output_file_name} "
                f"({output_size} bytes, {output_size / metadata['size'] * 100:.2f}% of original)"
            )

        if progress_callback:
            progress_callback(100)
        return self.storage.processed_url(output_file_name)


# Global service instance
codec_service = CodecService()
