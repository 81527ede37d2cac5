"""
Unit tests for merge strategies.

FFmpeg is never required: the FFmpeg strategy is run against a path
that doesn't exist or against small shell scripts standing in for the
binary, which is enough to exercise every failure branch.
"""

import stat
import sys
from pathlib import Path

import pytest

from src.core.audio.merge import (
    ByteConcatStrategy,
    FFmpegConcatStrategy,
    MergeAttempt,
    MergePipeline,
    MergeStrategy,
    create_merge_pipeline,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake ffmpeg is a shell script")


def write_chunks(directory: Path, *payloads: bytes) -> list[Path]:
    paths = []
    for i, payload in enumerate(payloads):
        path = directory / f"1_chunk_{i}.webm"
        path.write_bytes(payload)
        paths.append(path)
    return paths


def fake_ffmpeg(directory: Path, body: str) -> str:
    script = directory / "ffmpeg"
    script.write_text("#!/bin/sh\n" + body + "\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


class AlwaysFails(MergeStrategy):
    name = "always-fails"

    def __init__(self) -> None:
        self.calls = 0

    async def merge(self, chunk_paths, output_path):
        self.calls += 1
        return MergeAttempt.failure(self.name, "nope")


# ---------------------------------------------------------------------------
# Byte Concatenation
# ---------------------------------------------------------------------------

class TestByteConcatStrategy:

    @pytest.mark.asyncio
    async def test_output_length_is_sum_of_inputs(self, tmp_path):
        chunks = write_chunks(tmp_path, b"AAA", b"BB", b"CCCC")
        output = tmp_path / "out.webm"

        attempt = await ByteConcatStrategy().merge(chunks, output)

        assert attempt.succeeded
        assert attempt.bytes_written == 9
        assert output.read_bytes() == b"AAABBCCCC"

    @pytest.mark.asyncio
    async def test_missing_input_skipped(self, tmp_path):
        chunks = write_chunks(tmp_path, b"AAA", b"BBB")
        chunks.insert(1, tmp_path / "1_chunk_9.webm")
        output = tmp_path / "out.webm"

        attempt = await ByteConcatStrategy().merge(chunks, output)

        assert attempt.succeeded
        assert output.read_bytes() == b"AAABBB"

    @pytest.mark.asyncio
    async def test_nothing_written_is_failure(self, tmp_path):
        output = tmp_path / "out.webm"

        attempt = await ByteConcatStrategy().merge([tmp_path / "gone.webm"], output)

        assert not attempt.succeeded
        assert attempt.strategy == "byte-concat"
        assert not output.exists()


# ---------------------------------------------------------------------------
# FFmpeg Concatenation
# ---------------------------------------------------------------------------

class TestFFmpegConcatStrategy:

    @pytest.mark.asyncio
    async def test_missing_binary_is_failure(self, tmp_path, missing_ffmpeg):
        chunks = write_chunks(tmp_path, b"AAA")

        attempt = await FFmpegConcatStrategy(ffmpeg_path=missing_ffmpeg).merge(
            chunks, tmp_path / "out.webm"
        )

        assert not attempt.succeeded
        assert "not found" in attempt.error

    @pytest.mark.asyncio
    async def test_no_chunks_is_failure(self, tmp_path):
        attempt = await FFmpegConcatStrategy().merge([], tmp_path / "out.webm")
        assert not attempt.succeeded

    @posix_only
    @pytest.mark.asyncio
    async def test_success_when_output_written(self, tmp_path):
        # writes to its last argument, which is the output path
        ffmpeg = fake_ffmpeg(tmp_path, 'for last; do :; done\nprintf MERGED > "$last"')
        chunks = write_chunks(tmp_path, b"AAA", b"BBB")
        output = tmp_path / "out.webm"

        attempt = await FFmpegConcatStrategy(ffmpeg_path=ffmpeg).merge(chunks, output)

        assert attempt.succeeded
        assert attempt.strategy == "ffmpeg-concat"
        assert output.read_bytes() == b"MERGED"

    @posix_only
    @pytest.mark.asyncio
    async def test_nonzero_exit_is_failure_and_removes_output(self, tmp_path):
        ffmpeg = fake_ffmpeg(tmp_path, 'for last; do :; done\nprintf partial > "$last"\nexit 1')
        chunks = write_chunks(tmp_path, b"AAA")
        output = tmp_path / "out.webm"

        attempt = await FFmpegConcatStrategy(ffmpeg_path=ffmpeg).merge(chunks, output)

        assert not attempt.succeeded
        assert attempt.error == "exit code 1"
        assert not output.exists()

    @posix_only
    @pytest.mark.asyncio
    async def test_empty_output_is_failure(self, tmp_path):
        ffmpeg = fake_ffmpeg(tmp_path, "exit 0")
        chunks = write_chunks(tmp_path, b"AAA")

        attempt = await FFmpegConcatStrategy(ffmpeg_path=ffmpeg).merge(
            chunks, tmp_path / "out.webm"
        )

        assert not attempt.succeeded
        assert "no output" in attempt.error

    @posix_only
    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, tmp_path):
        ffmpeg = fake_ffmpeg(tmp_path, "exec sleep 10")
        chunks = write_chunks(tmp_path, b"AAA")

        attempt = await FFmpegConcatStrategy(ffmpeg_path=ffmpeg, timeout_seconds=0.5).merge(
            chunks, tmp_path / "out.webm"
        )

        assert not attempt.succeeded
        assert "timed out" in attempt.error

    @posix_only
    @pytest.mark.asyncio
    async def test_list_file_removed(self, tmp_path):
        ffmpeg = fake_ffmpeg(tmp_path, "exit 1")
        work = tmp_path / "work"
        work.mkdir()
        chunks = write_chunks(work, b"AAA")

        await FFmpegConcatStrategy(ffmpeg_path=ffmpeg).merge(chunks, work / "out.webm")

        assert sorted(p.name for p in work.iterdir()) == ["1_chunk_0.webm"]

    def test_list_file_escapes_quotes(self, tmp_path):
        odd = tmp_path / "it's_chunk_0.webm"
        odd.write_bytes(b"A")

        list_file = FFmpegConcatStrategy()._write_list_file([odd], tmp_path)

        content = list_file.read_text(encoding="utf-8")
        assert content.startswith("file '")
        assert "it'\\''s_chunk_0.webm'" in content


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestMergePipeline:

    @pytest.mark.asyncio
    async def test_falls_back_to_byte_concat(self, tmp_path, missing_ffmpeg):
        chunks = write_chunks(tmp_path, b"AAA", b"BBB")
        output = tmp_path / "out.webm"

        outcome = await create_merge_pipeline(ffmpeg_path=missing_ffmpeg).run(chunks, output)

        assert outcome.succeeded
        assert [a.strategy for a in outcome.attempts] == ["ffmpeg-concat", "byte-concat"]
        assert outcome.winner.strategy == "byte-concat"
        assert output.read_bytes() == b"AAABBB"

    @posix_only
    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, tmp_path):
        ffmpeg = fake_ffmpeg(tmp_path, "exec sleep 10")
        chunks = write_chunks(tmp_path, b"AAA", b"BBB")
        output = tmp_path / "out.webm"

        outcome = await create_merge_pipeline(ffmpeg_path=ffmpeg, timeout_seconds=0.5).run(
            chunks, output
        )

        assert outcome.winner.strategy == "byte-concat"
        assert output.read_bytes() == b"AAABBB"

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, tmp_path):
        after = AlwaysFails()
        pipeline = MergePipeline([ByteConcatStrategy(), after])

        outcome = await pipeline.run(write_chunks(tmp_path, b"A"), tmp_path / "out.webm")

        assert outcome.succeeded
        assert after.calls == 0

    @pytest.mark.asyncio
    async def test_all_failures_described(self, tmp_path):
        pipeline = MergePipeline([AlwaysFails(), AlwaysFails()])

        outcome = await pipeline.run([], tmp_path / "out.webm")

        assert not outcome.succeeded
        assert outcome.winner is None
        assert outcome.describe_failures() == "always-fails: nope; always-fails: nope"

    def test_requires_a_strategy(self):
        with pytest.raises(ValueError, match="At least one"):
            MergePipeline([])

    def test_strategy_order(self):
        assert create_merge_pipeline().strategy_names == ["ffmpeg-concat", "byte-concat"]
