import asyncio
import logging
import os
import tempfile
from typing import List, Optional

from leadflow.core.config import settings

logger = logging.getLogger(__name__)

# codec -> (ffmpeg encoder, default container)
CODECS = {
    "aac": ("aac", "mp4"),
    "mp3": ("libmp3lame", "mp3"),
    "opus": ("libopus", "ogg"),
}


class MediaProcessingError(Exception):
    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


class MediaProcessor:
    """
    Audio operations over raw bytes. Each call writes its inputs to a scratch
    directory, runs one ffmpeg process and reads the output back.
    """

    def __init__(self, ffmpeg_bin: Optional[str] = None):
        self.ffmpeg_bin = ffmpeg_bin or settings.FFMPEG_BIN

    async def _run(self, step: str, inputs: List[bytes], args: List[str], output_name: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix="leadflow-") as workdir:
            cmd = [self.ffmpeg_bin, "-y", "-hide_banner", "-loglevel", "error"]
            for i, data in enumerate(inputs):
                path = os.path.join(workdir, f"input{i}")
                with open(path, "wb") as f:
                    f.write(data)
                cmd += ["-i", path]
            output_path = os.path.join(workdir, output_name)
            cmd += args + [output_path]

            logger.debug(f"[MEDIA] {step}: {' '.join(cmd)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise MediaProcessingError(step, f"could not start ffmpeg: {e}") from e
            _, stderr = await process.communicate()
            if process.returncode != 0:
                detail = stderr.decode(errors="replace").strip()[-500:]
                raise MediaProcessingError(step, f"ffmpeg exited with {process.returncode}: {detail}")

            with open(output_path, "rb") as f:
                return f.read()

    async def trim(self, data: bytes, start: float, duration: float) -> bytes:
        return await self._run(
            "trim", [data],
            ["-ss", str(start), "-t", str(duration), "-c:a", "libmp3lame"],
            "trimmed.mp3",
        )

    async def mix_overlay(self, data: bytes, overlay: bytes, delay_ms: int, overlay_volume: float) -> bytes:
        graph = (f"[1]adelay={delay_ms}|{delay_ms},volume={overlay_volume}[wm];"
                 f"[0][wm]amix=inputs=2:duration=first")
        return await self._run(
            "watermark", [data, overlay],
            ["-filter_complex", graph, "-c:a", "libmp3lame"],
            "mixed.mp3",
        )

    async def transcode(self, data: bytes, codec: str, container: Optional[str] = None) -> bytes:
        if codec not in CODECS:
            raise MediaProcessingError("transcode", f"unsupported codec {codec!r}")
        encoder, default_container = CODECS[codec]
        container = container or default_container
        return await self._run(
            "transcode", [data],
            ["-vn", "-c:a", encoder, "-f", container],
            f"output.{container}",
        )
