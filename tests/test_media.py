"""Tests for attachment lookup and image optimization."""

from unittest.mock import AsyncMock, patch

import pytest

from signalrelay.media.attachments import container_path_for, find_attachment_file
from signalrelay.media.images import ImageOptimizer, MediaToolError

RUN_TOOL = "signalrelay.media.images.run_tool"


class TestFindAttachment:
    def test_exact_and_extension_match(self, tmp_path):
        (tmp_path / "abc").write_bytes(b"")
        assert find_attachment_file(tmp_path, "abc") == tmp_path / "abc"

        (tmp_path / "xyz.jpg").write_bytes(b"")
        assert find_attachment_file(tmp_path, "xyz") == tmp_path / "xyz.jpg"

    def test_longer_id_not_matched(self, tmp_path):
        (tmp_path / "abc123.jpg").write_bytes(b"")
        assert find_attachment_file(tmp_path, "abc") is None

    def test_directories_skipped(self, tmp_path):
        (tmp_path / "abc.d").mkdir()
        assert find_attachment_file(tmp_path, "abc") is None

    def test_missing_directory(self, tmp_path):
        assert find_attachment_file(tmp_path / "nope", "abc") is None
        assert find_attachment_file(tmp_path, "") is None

    def test_container_path(self):
        assert container_path_for("/workspace/att/", "a.png") == "/workspace/att/a.png"


class TestImageOptimizer:
    @pytest.mark.asyncio
    async def test_small_image_untouched(self, tmp_path):
        image = tmp_path / "a.png"
        image.write_bytes(b"png")
        with patch(RUN_TOOL, new=AsyncMock(return_value="800,600\n")) as run_tool:
            assert await ImageOptimizer().optimize(image) == image
        assert run_tool.await_count == 1

    @pytest.mark.asyncio
    async def test_large_image_downscaled(self, tmp_path):
        image = tmp_path / "a.png"
        image.write_bytes(b"png")
        run_tool = AsyncMock(side_effect=["4032,3024\n", ""])
        with patch(RUN_TOOL, new=run_tool):
            result = await ImageOptimizer(max_edge=1568).optimize(image)

        assert result == tmp_path / "a.png.optimized.jpg"
        ffmpeg_args = run_tool.call_args_list[1].args
        assert ffmpeg_args[0] == "ffmpeg"
        assert ffmpeg_args[-1] == str(result)
        assert any("1568" in arg for arg in ffmpeg_args)

    @pytest.mark.asyncio
    async def test_tool_failure_returns_original(self, tmp_path):
        image = tmp_path / "a.png"
        image.write_bytes(b"png")
        with patch(RUN_TOOL, new=AsyncMock(side_effect=MediaToolError("ffprobe failed to start"))):
            assert await ImageOptimizer().optimize(image) == image

    @pytest.mark.asyncio
    async def test_unparseable_probe_returns_original(self, tmp_path):
        image = tmp_path / "a.png"
        image.write_bytes(b"png")
        with patch(RUN_TOOL, new=AsyncMock(return_value="N/A,N/A")):
            assert await ImageOptimizer().optimize(image) == image

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await ImageOptimizer().optimize(tmp_path / "gone.png") == tmp_path / "gone.png"
