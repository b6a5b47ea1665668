"""Archive downloads with timeout, progress and cancellation."""

import threading
from pathlib import Path
from typing import Callable

import requests

from .api import USER_AGENT
from .errors import ModIOError, NetworkError, OperationCancelled
from .state import DEFAULT_TIMEOUT

CHUNK_SIZE = 64 * 1024


class DownloadError(NetworkError):
    """Raised when a download fails."""

    pass


class Downloader:
    """Downloads mod archives into a staging directory."""

    def __init__(self, session: requests.Session | None = None, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    def download(
        self,
        url: str,
        target_dir: Path,
        filename: str,
        on_progress: Callable[[int, int], None] | None = None,
        cancel_event: threading.Event | None = None,
        expected_size: int = 0,
    ) -> Path:
        """
        Download a file to target_dir/filename.

        Args:
            on_progress: Optional callback(bytes_downloaded, total_bytes)
            cancel_event: Checked between chunks; raises OperationCancelled when set
            expected_size: Size advertised by the registry, used when the
                           server sends no content-length

        Returns path to the downloaded file. A partial file never survives a
        failure, timeout or cancellation.
        """
        target_dir.mkdir(parents=True, exist_ok=True)
        temp_path = target_dir / f".downloading_{filename}"
        final_path = target_dir / filename

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                total_size = int(response.headers.get("content-length", 0) or expected_size)

                bytes_downloaded = 0
                with open(temp_path, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel_event is not None and cancel_event.is_set():
                            raise OperationCancelled(f"Download of {filename} cancelled")
                        if chunk:
                            f.write(chunk)
                            bytes_downloaded += len(chunk)
                            if on_progress:
                                on_progress(bytes_downloaded, total_size)

            # Rename to final filename
            temp_path.replace(final_path)
            return final_path

        except OperationCancelled:
            temp_path.unlink(missing_ok=True)
            raise
        except requests.Timeout as e:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Timed out downloading {filename} after {self.timeout}s: {e}")
        except requests.RequestException as e:
            # Clean up temp file on error
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Failed to download {filename}: {e}")
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ModIOError(f"Could not write download: {e}", temp_path)
