"""
Strategies for merging staged audio chunks into one file.

Merging is an ordered chain of named strategies. Each one reports a
MergeAttempt (success or failure, never an exception) and the pipeline
stops at the first success:

1. ffmpeg-concat: FFmpeg's concat demuxer with stream copy. Produces a
   properly remuxed container when FFmpeg is installed and the chunks
   are well formed.
2. byte-concat: plain sequential concatenation. Always available, and
   for MediaRecorder-style WebM chunks the result still decodes.

This shells out to ffmpeg via subprocess
rather than using a binding, which keeps it testable with a fake binary.
"""

import asyncio
import logging
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeAttempt:
    """Result of running one strategy."""
    strategy: str
    succeeded: bool
    output_path: Optional[Path] = None
    bytes_written: int = 0
    error: Optional[str] = None

    @classmethod
    def success(cls, strategy: str, output_path: Path) -> "MergeAttempt":
        return cls(
            strategy=strategy,
            succeeded=True,
            output_path=output_path,
            bytes_written=output_path.stat().st_size,
        )

    @classmethod
    def failure(cls, strategy: str, error: str) -> "MergeAttempt":
        return cls(strategy=strategy, succeeded=False, error=error)


@dataclass
class MergeOutcome:
    """Every attempt made, in order. The last one decides the outcome."""
    attempts: list[MergeAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].succeeded

    @property
    def winner(self) -> Optional[MergeAttempt]:
        return self.attempts[-1] if self.succeeded else None

    def describe_failures(self) -> str:
        return "; ".join(
            f"{a.strategy}: {a.error}" for a in self.attempts if not a.succeeded
        )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class MergeStrategy(ABC):
    """
    Base class for merge strategies.

    Implementations must leave output_path either absent or holding a
    complete artifact; the next strategy writes to the same path.
    """

    name: str = "abstract"

    @abstractmethod
    async def merge(self, chunk_paths: list[Path], output_path: Path) -> MergeAttempt:
        """Merge chunk_paths (already in order) into output_path."""
        pass


class FFmpegConcatStrategy(MergeStrategy):
    """
    Concatenate with FFmpeg's concat demuxer, copying streams.

    Any non-zero exit, missing binary, timeout, or empty output counts as
    failure. On timeout subprocess.run kills the child before raising.
    """

    name = "ffmpeg-concat"

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout_seconds: float = 120.0) -> None:
        self._ffmpeg = ffmpeg_path
        self._timeout = timeout_seconds

    async def merge(self, chunk_paths: list[Path], output_path: Path) -> MergeAttempt:
        if not chunk_paths:
            return MergeAttempt.failure(self.name, "no chunks to merge")

        list_file = self._write_list_file(chunk_paths, output_path.parent)

        cmd = [
            self._ffmpeg,
            "-y",  # overwrite
            "-f", "concat",
            "-safe", "0",  # absolute paths in the list file
            "-i", str(list_file),
            "-c", "copy",
            str(output_path),
        ]

        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                timeout=self._timeout,
            )
        except FileNotFoundError:
            return self._fail(output_path, f"ffmpeg not found at {self._ffmpeg}")
        except subprocess.TimeoutExpired:
            return self._fail(output_path, f"timed out after {self._timeout}s")
        except OSError as e:
            return self._fail(output_path, f"could not start ffmpeg: {e}")
        finally:
            list_file.unlink(missing_ok=True)

        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            logger.warning(
                "FFmpeg concat failed",
                extra={"returncode": result.returncode, "stderr": stderr[-500:]}
            )
            return self._fail(output_path, f"exit code {result.returncode}")

        if not output_path.exists() or output_path.stat().st_size == 0:
            return self._fail(output_path, "ffmpeg produced no output")

        return MergeAttempt.success(self.name, output_path)

    def _write_list_file(self, chunk_paths: list[Path], directory: Path) -> Path:
        """
        Write the concat demuxer input, one `file '<path>'` line per chunk.

        Single quotes in paths are closed, escaped, and reopened, which is
        the quoting the concat demuxer expects.
        """
        lines = []
        for path in chunk_paths:
            escaped = path.resolve().as_posix().replace("'", "'\\''")
            lines.append(f"file '{escaped}'")

        with tempfile.NamedTemporaryFile(
            mode="w",
            suffix=".txt",
            prefix="chunks_",
            dir=directory,
            delete=False,
            encoding="utf-8",
        ) as f:
            f.write("\n".join(lines) + "\n")
            return Path(f.name)

    def _fail(self, output_path: Path, error: str) -> MergeAttempt:
        # a half-written file would be mistaken for a merge by the next strategy
        output_path.unlink(missing_ok=True)
        return MergeAttempt.failure(self.name, error)


class ByteConcatStrategy(MergeStrategy):
    """
    Append chunk bytes in order.

    Missing inputs are skipped with a warning, matching the pipeline's
    preference for a partial artifact over none. Writing zero bytes in
    total is a failure.
    """

    name = "byte-concat"

    async def merge(self, chunk_paths: list[Path], output_path: Path) -> MergeAttempt:
        try:
            written = await asyncio.to_thread(self._concatenate, chunk_paths, output_path)
        except OSError as e:
            output_path.unlink(missing_ok=True)
            return MergeAttempt.failure(self.name, str(e))

        if written == 0:
            output_path.unlink(missing_ok=True)
            return MergeAttempt.failure(self.name, "no chunk data to concatenate")

        logger.info(
            "Concatenated chunk bytes",
            extra={"chunk_count": len(chunk_paths), "size_bytes": written}
        )
        return MergeAttempt.success(self.name, output_path)

    def _concatenate(self, chunk_paths: list[Path], output_path: Path) -> int:
        written = 0
        with open(output_path, "wb") as out:
            for path in chunk_paths:
                if not path.exists():
                    logger.warning("Chunk file missing, skipping", extra={"path": str(path)})
                    continue
                with open(path, "rb") as src:
                    shutil.copyfileobj(src, out)
                written += path.stat().st_size
        return written


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class MergePipeline:
    """Runs strategies in order until one succeeds."""

    def __init__(self, strategies: list[MergeStrategy]) -> None:
        if not strategies:
            raise ValueError("At least one merge strategy is required")
        self._strategies = list(strategies)

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    async def run(self, chunk_paths: list[Path], output_path: Path) -> MergeOutcome:
        outcome = MergeOutcome()

        for strategy in self._strategies:
            attempt = await strategy.merge(chunk_paths, output_path)
            outcome.attempts.append(attempt)

            if attempt.succeeded:
                logger.info(
                    "Merge strategy succeeded",
                    extra={"strategy": strategy.name, "size_bytes": attempt.bytes_written}
                )
                break

            logger.warning(
                "Merge strategy failed, trying next",
                extra={"strategy": strategy.name, "error": attempt.error}
            )

        return outcome


def create_merge_pipeline(
    ffmpeg_path: str = "ffmpeg",
    timeout_seconds: float = 120.0,
) -> MergePipeline:
    """FFmpeg first, raw concatenation as the guaranteed fallback."""
    return MergePipeline([
        FFmpegConcatStrategy(ffmpeg_path=ffmpeg_path, timeout_seconds=timeout_seconds),
        ByteConcatStrategy(),
    ])
