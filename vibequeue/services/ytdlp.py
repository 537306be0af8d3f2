from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import subprocess
from typing import List, Optional

from vibequeue.core.config import Settings, get_settings
from vibequeue.core.errors import FetchPermanent, FetchTransient
from vibequeue.models.song import Candidate
from vibequeue.services.capabilities import SongFetcher

log = logging.getLogger("fetch.ytdlp")

# trechos de stderr do yt-dlp que não adianta tentar de novo
_PERMANENT_MARKERS = (
    "video unavailable",
    "private video",
    "unsupported url",
    "is not a valid url",
    "http error 404",
    "not found",
    "has been removed",
    "copyright",
    "members-only",
    "sign in to confirm your age",
)

_PRINT_FORMAT = "%(title)s\t%(uploader)s\t%(webpage_url)s\t%(duration)s"


def is_locator(text: str) -> bool:
    return text.startswith("http://") or text.startswith("https://")


def classify_stderr(stderr: str) -> type:
    low = (stderr or "").lower()
    if any(marker in low for marker in _PERMANENT_MARKERS):
        return FetchPermanent
    return FetchTransient


def parse_print_lines(stdout: str) -> List[Candidate]:
    results: List[Candidate] = []
    for line in (stdout or "").strip().splitlines():
        parts = line.split("\t")
        if len(parts) < 3 or not parts[2].strip():
            log.warning("ytdlp_unparseable_line", extra={"line": line[:200]})
            continue

        title, uploader, url = parts[0].strip(), parts[1].strip(), parts[2].strip()
        duration: Optional[float] = None
        if len(parts) > 3:
            try:
                duration = float(parts[3])
            except ValueError:
                duration = None

        results.append(
            Candidate(
                title=title if title != "NA" else "",
                artist=uploader if uploader != "NA" else "",
                locator=url,
                duration_s=duration,
            )
        )
    return results


def cache_key(locator: str) -> str:
    return hashlib.sha256(locator.encode("utf-8")).hexdigest()[:20]


class YtDlpFetcher(SongFetcher):
    """
    Capability de fetch em cima do binário yt-dlp.

    - resolve: busca `ytsearchN:` ou metadados de uma URL
    - materialize: mp3 no cache, endereçado pelo locator
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    # =========================
    # RESOLVE
    # =========================

    async def resolve(self, query_or_locator: str, count: int = 1) -> List[Candidate]:
        if is_locator(query_or_locator):
            args = ["--no-playlist", query_or_locator]
        else:
            args = ["--flat-playlist", f"ytsearch{max(1, count)}:{query_or_locator}"]

        cmd = [self.settings.ytdlp_bin, "--print", _PRINT_FORMAT, "--no-download", *args]

        log.info("ytdlp_resolve_start", extra={"query": query_or_locator, "count": count})
        stdout = await self._run(cmd)
        results = parse_print_lines(stdout)[: max(1, count)]
        log.info("ytdlp_resolve_done", extra={"query": query_or_locator, "results": len(results)})
        return results

    # =========================
    # DOWNLOAD
    # =========================

    async def materialize(self, locator: str) -> str:
        os.makedirs(self.settings.cache_dir, exist_ok=True)
        key = cache_key(locator)
        out = os.path.join(self.settings.cache_dir, f"{key}.mp3")

        if os.path.isfile(out):
            log.info("audio_cache_hit", extra={"key": key})
            return out

        cmd = [
            self.settings.ytdlp_bin,
            "-x",
            "--audio-format", "mp3",
            "--audio-quality", "5",
            "--no-playlist",
            "-o", os.path.join(self.settings.cache_dir, f"{key}.%(ext)s"),
            locator,
        ]

        log.info("audio_download_start", extra={"key": key})
        await self._run(cmd)

        if not os.path.isfile(out):
            raise FetchTransient(f"yt-dlp finished but {out} is missing")

        log.info("audio_download_done", extra={"key": key})
        return out

    # =========================
    # LOW LEVEL
    # =========================

    async def _run(self, cmd: List[str]) -> str:
        try:
            proc = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                timeout=self.settings.ytdlp_timeout_s,
            )
        except FileNotFoundError as e:
            raise FetchPermanent(f"{cmd[0]} not installed") from e
        except subprocess.TimeoutExpired as e:
            raise FetchTransient(f"yt-dlp timed out after {e.timeout}s") from e
        except OSError as e:
            raise FetchTransient(str(e)) from e

        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            error_cls = classify_stderr(stderr)
            log.error(
                "ytdlp_failed",
                extra={"returncode": proc.returncode, "stderr": stderr[-300:]},
            )
            last_line = stderr.splitlines()[-1] if stderr else f"exit code {proc.returncode}"
            raise error_cls(last_line)

        return proc.stdout or ""
