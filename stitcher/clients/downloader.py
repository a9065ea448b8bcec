from __future__ import annotations

import logging
import os
import time
from typing import Optional

import httpx

from stitcher.errors import DownloadError


class AssetRetriever:
    """Streams remote assets to local files.

    ``timeout`` bounds the whole transfer, not only the gap between reads.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport
        self.log = logger or logging.getLogger(__name__)

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=min(10.0, self.timeout),
            read=self.timeout,
            write=min(10.0, self.timeout),
            pool=self.timeout,
        )

    def fetch(self, url: str, destination: str) -> str:
        candidate = (url or "").strip()
        if not candidate.lower().startswith(("http://", "https://")):
            raise DownloadError(f"Unsupported URL: {url!r}")
        written = 0
        deadline = time.monotonic() + self.timeout
        try:
            with httpx.Client(timeout=self._timeout(), follow_redirects=True, transport=self.transport) as client:
                with client.stream("GET", candidate) as resp:
                    resp.raise_for_status()
                    with open(destination, "wb") as f:
                        # iter_bytes() without a chunk size yields as data arrives
                        for chunk in resp.iter_bytes():
                            if time.monotonic() > deadline:
                                raise httpx.ReadTimeout("transfer deadline exceeded", request=resp.request)
                            if chunk:
                                f.write(chunk)
                                written += len(chunk)
        except httpx.TimeoutException as exc:
            self._discard(destination)
            raise DownloadError(f"Download timed out after {self.timeout:g}s: {candidate}") from exc
        except httpx.HTTPStatusError as exc:
            self._discard(destination)
            raise DownloadError(
                f"Download failed with HTTP {exc.response.status_code}: {candidate}"
            ) from exc
        except (httpx.HTTPError, OSError) as exc:
            self._discard(destination)
            raise DownloadError(f"Download failed: {exc}") from exc
        if written == 0:
            self._discard(destination)
            raise DownloadError(f"Downloaded file is empty: {candidate}")
        self.log.info("asset downloaded", extra={"url": candidate, "path": destination, "bytes": written})
        return destination

    def _discard(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            self.log.debug("partial download removal failed", extra={"path": path}, exc_info=True)
