from __future__ import annotations

"""
Download helper for MATPOWER case files.

Design goals
------------
- Deterministic behavior:
  * stable candidate URL ordering
  * no randomized fallbacks
  * controlled retry policy (default: 1 try per candidate URL)
- Testability: supports injecting a custom `session` object with a `.get(url, timeout=...)` method.

Environment override
--------------------
PF_MATPOWER_BASE_URLS="https://...,https://..." replaces the candidate list as-is.
"""

import logging
import os
import time
from typing import Optional, Sequence, Union

import requests

logger = logging.getLogger(__name__)

_DEFAULT_MATPOWER_BASE_URL_RAW = (
    "https://raw.githubusercontent.com/MATPOWER/matpower/master/data"
)
_DEFAULT_MATPOWER_BASE_URL_GITHUB = (
    "https://github.com/MATPOWER/matpower/raw/master/data"
)

_ENV_MATPOWER_BASE_URLS = "PF_MATPOWER_BASE_URLS"


class DownloadError(RuntimeError):
    """
    Raised when downloading from one or more candidate URLs fails.

    Attributes
    ----------
    urls:
        Candidate URLs attempted. May be empty.
    """

    def __init__(self, message: str, *, urls: Sequence[str] | None = None) -> None:
        super().__init__(str(message))
        self.urls: tuple[str, ...] = tuple(str(u) for u in (urls or ()))


def _unique_preserve(values: Sequence[str]) -> list[str]:
    """Return unique items preserving the first occurrence order."""
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        vv = str(v).strip()
        if not vv or vv in seen:
            continue
        seen.add(vv)
        out.append(vv)
    return out


def _candidate_base_urls(*, explicit_base_url: str, defaults: Sequence[str]) -> list[str]:
    """
    Build the ordered list of candidate base URLs.

    1) If PF_MATPOWER_BASE_URLS is set -> use it (exactly, no implicit fallbacks).
    2) Otherwise -> [explicit_base_url] + defaults (deduplicated).
    """
    raw = os.environ.get(_ENV_MATPOWER_BASE_URLS, "").strip()
    if raw:
        env_urls = _unique_preserve([u.strip() for u in raw.split(",")])
        logger.info("Using base URLs from %s: %s", _ENV_MATPOWER_BASE_URLS, env_urls)
        return env_urls

    explicit = str(explicit_base_url).strip().rstrip("/")
    return _unique_preserve([explicit, *[d.strip().rstrip("/") for d in defaults]])


def _download_text_file(
    *,
    url: str,
    target_path: str,
    timeout: float,
    session: Optional[requests.Session],
    retries: int = 1,
    backoff_sec: float = 0.0,
) -> str:
    """
    Download a text file from `url` into `target_path`.

    Raises DownloadError on failure so callers can try alternate candidate URLs.
    """
    if retries <= 0:
        raise ValueError("retries must be positive")

    http = session or requests
    last_exc: Exception | None = None

    for attempt in range(1, int(retries) + 1):
        try:
            logger.debug("Downloading (attempt %d/%d): %s", attempt, retries, url)
            response = http.get(url, timeout=timeout)
            response.raise_for_status()

            dir_name = os.path.dirname(target_path)
            if dir_name:
                os.makedirs(dir_name, exist_ok=True)

            with open(target_path, "w", encoding="utf-8", newline="\n") as f:
                f.write(str(response.text))

            logger.info("Downloaded and saved: %s", target_path)
            return target_path
        except Exception as e:  # noqa: BLE001 - network + IO errors
            last_exc = e
            logger.warning(
                "Download failed (attempt %d/%d): %s (%s)", attempt, retries, url, e
            )
            if attempt < retries and backoff_sec > 0:
                time.sleep(float(backoff_sec))

    raise DownloadError(
        f"Failed to download after {retries} attempt(s): {url}", urls=(url,)
    ) from last_exc


def download_ieee_case(
    case_number: Union[int, str],
    target_path: Optional[str] = None,
    *,
    overwrite: bool = False,
    timeout: float = 15.0,
    base_url: str = _DEFAULT_MATPOWER_BASE_URL_RAW,
    session: Optional[requests.Session] = None,
    retries_per_url: int = 1,
    backoff_sec: float = 0.0,
) -> str:
    """
    Download a MATPOWER case file (e.g., case14.m, case30.m, case118.m).

    Candidate URLs are tried in order: `base_url` first, then the github.com mirror.
    Each candidate is attempted `retries_per_url` times.

    Returns
    -------
    str
        Path to the existing or downloaded file.
    """
    try:
        n = int(case_number)
    except (TypeError, ValueError) as e:
        raise ValueError(f"case_number must be an integer, got {case_number!r}") from e
    if n <= 0:
        raise ValueError(f"case_number must be positive, got {n}")

    if target_path is None:
        target_path = os.path.join("data", "input", f"case{n}.m")

    if os.path.exists(target_path) and not overwrite:
        logger.info("File already exists, skipping download: %s", target_path)
        return str(target_path)

    base_urls = _candidate_base_urls(
        explicit_base_url=str(base_url), defaults=[_DEFAULT_MATPOWER_BASE_URL_GITHUB]
    )
    urls = [f"{u.rstrip('/')}/case{n}.m" for u in base_urls]
    logger.info("Downloading MATPOWER case%d (candidates=%d)", n, len(urls))

    errors: list[str] = []
    for i, url in enumerate(urls, start=1):
        logger.info("Download candidate %d/%d: %s", i, len(urls), url)
        try:
            return _download_text_file(
                url=url,
                target_path=str(target_path),
                timeout=float(timeout),
                session=session,
                retries=int(retries_per_url),
                backoff_sec=float(backoff_sec),
            )
        except DownloadError as e:
            errors.append(f"{url}: {e}")
            logger.error("Candidate URL failed: %s", url)

    raise DownloadError("All candidate URLs failed:\n" + "\n".join(errors), urls=urls)
