"""
Fetching release IPAs for the built-in installers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import requests

from iloader.constants import DOWNLOAD_CHUNK_SIZE, DOWNLOAD_TIMEOUT
from iloader.exceptions import NetworkError, PermissionDeniedError, RequestTimeoutError

logger = logging.getLogger(__name__)


def download_file(
    url: str,
    dest: Path,
    session: Optional[requests.Session] = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """
    Stream a URL into a file.

    Raises:
        NetworkError: On transport failure or a non-200 answer.
        RequestTimeoutError: If the server stops answering.
        PermissionDeniedError: If the destination cannot be written.
    """
    http = session or requests.Session()
    stage = "download"

    logger.info(f"Downloading {url}")
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            if response.status_code != 200:
                raise NetworkError(stage, f"HTTP {response.status_code}")
            with open(dest, "wb") as f:
                for chunk in response.iter_content(DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
    except requests.Timeout as e:
        raise RequestTimeoutError(stage, timeout) from e
    except requests.RequestException as e:
        raise NetworkError(stage, type(e).__name__) from e
    except PermissionError as e:
        raise PermissionDeniedError(dest.name) from e

    logger.debug(f"Downloaded {dest.stat().st_size} bytes")
    return dest
