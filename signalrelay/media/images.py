"""Downscale large received images before they reach a vision model."""

import asyncio
from pathlib import Path

from loguru import logger

MAX_IMAGE_EDGE = 1568
TOOL_TIMEOUT_S = 30.0


class MediaToolError(Exception):
    """An ffmpeg/ffprobe invocation failed."""


async def run_tool(*args: str, timeout: float = TOOL_TIMEOUT_S) -> str:
    """Run a media CLI tool and return its stdout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise MediaToolError(f"{args[0]} failed to start: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise MediaToolError(f"{args[0]} timed out after {timeout}s") from e

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[:200]
        raise MediaToolError(f"{args[0]} failed: {detail or proc.returncode}")
    return stdout.decode("utf-8", errors="replace")


class ImageOptimizer:
    """Writes a downscaled copy next to the original when an edge is too long.

    The original file is never touched. Any failure yields the original path.
    """

    def __init__(
        self,
        max_edge: int = MAX_IMAGE_EDGE,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: float = TOOL_TIMEOUT_S,
    ):
        self.max_edge = max_edge
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def optimize(self, file_path: str | Path) -> Path:
        path = Path(file_path)
        if not path.exists():
            return path

        try:
            width, height = await self._probe(path)
            if not width or not height or (width <= self.max_edge and height <= self.max_edge):
                return path

            out_path = path.with_name(f"{path.name}.optimized.jpg")
            edge = self.max_edge
            await run_tool(
                self.ffmpeg_path, "-y", "-i", str(path),
                "-vf", f"scale='if(gt(iw,ih),{edge},-2)':'if(gt(ih,iw),{edge},-2)'",
                "-q:v", "2",
                str(out_path),
                timeout=self.timeout,
            )
            logger.info(f"Image optimized: {path.name} {width}x{height} -> max edge {edge}")
            return out_path
        except (MediaToolError, ValueError) as e:
            logger.warning(f"Image optimization failed for {path.name}, using original: {e}")
            return path

    async def _probe(self, path: Path) -> tuple[int, int]:
        out = await run_tool(
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=p=0",
            str(path),
            timeout=self.timeout,
        )
        parts = out.strip().split(",")
        if len(parts) < 2:
            return 0, 0
        return int(parts[0]), int(parts[1])
