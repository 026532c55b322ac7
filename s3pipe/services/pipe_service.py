"""Pipe service: copy one input stream to any number of objects.

With no destinations the input is echoed to standard output. Otherwise the
input is read once and every chunk is written to one streaming upload per
destination, like a multi-way ``tee``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Sequence

from s3pipe.infra.storage.client import StorageClient, StorageError, Target
from s3pipe.infra.storage.upload import UploadHandle

logger = logging.getLogger("s3pipe.pipe")

DEFAULT_CHUNK_SIZE = 32 * 1024


class FanOutError(StorageError):
    """Raised when at least one destination of a pipe failed."""

    def __init__(
        self,
        message: str,
        *,
        targets: Sequence[str],
        failures: dict[str, BaseException] | None = None,
    ) -> None:
        super().__init__(f"{message} (targets: {', '.join(targets)})")
        self.targets = list(targets)
        self.failures = dict(failures or {})


@dataclass(frozen=True, slots=True)
class PipeDestination:
    """One object to write the piped stream to."""

    client: StorageClient
    target: Target
    url: str


@dataclass(slots=True)
class _OpenUpload:
    destination: PipeDestination
    handle: UploadHandle


class PipeService:
    """Reads ``source`` once and replicates it to every destination."""

    def __init__(
        self,
        source: BinaryIO,
        *,
        stdout: BinaryIO,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._source = source
        self._stdout = stdout
        self._chunk_size = chunk_size

    def run(self, destinations: Sequence[PipeDestination]) -> None:
        if not destinations:
            # no destination means cat the input to stdout
            self.cat_out()
            return
        self.put_targets(destinations)

    def _read_chunk(self) -> bytes:
        # read1 returns whatever is available so live input is not held back
        read = getattr(self._source, "read1", None) or self._source.read
        return read(self._chunk_size)

    def cat_out(self) -> int:
        """Copy the input to stdout; a reader that went away ends the copy quietly."""
        copied = 0
        try:
            while True:
                chunk = self._read_chunk()
                if not chunk:
                    break
                self._stdout.write(chunk)
                self._stdout.flush()
                copied += len(chunk)
        except BrokenPipeError:
            logger.debug("stdout closed by reader after %s bytes", copied)
        return copied

    def put_targets(self, destinations: Sequence[PipeDestination]) -> int:
        """Stream the input to every destination until EOF.

        The size is never declared: stat'ing the input is unreliable for
        pipes and special files, so every upload is sent without a length.

        Returns:
            Number of bytes read from the input.

        Raises:
            FanOutError: If reading the input or any destination failed.
            KeyboardInterrupt: Re-raised once every upload has been aborted.
        """
        urls = [destination.url for destination in destinations]
        failures: dict[str, BaseException] = {}
        uploads: list[_OpenUpload] = []
        for destination in destinations:
            try:
                handle = destination.client.put(destination.target, size=-1)
            except StorageError as exc:
                failures[destination.url] = exc
                break
            uploads.append(_OpenUpload(destination, handle))

        copied = 0
        input_error: BaseException | None = None
        # a destination that could not even be opened cancels the whole pipe
        setup_failed = bool(failures)
        if not setup_failed:
            try:
                copied = self._copy(uploads, failures)
            except BaseException as exc:
                # uploads must not outlive the input, whatever stopped it
                input_error = exc

        for upload in uploads:
            if setup_failed or input_error is not None:
                upload.handle.abort(input_error)
            elif upload.destination.url in failures:
                upload.handle.abort(failures[upload.destination.url])
            else:
                try:
                    upload.handle.close()
                except StorageError as exc:
                    failures[upload.destination.url] = exc

        if input_error is not None:
            if not isinstance(input_error, Exception):
                raise input_error
            raise FanOutError(
                f"Unable to read input: {input_error}", targets=urls
            ) from input_error
        if failures:
            url, first = next(
                (url, failures[url]) for url in urls if url in failures
            )
            logger.error(
                "pipe_failed targets=%s failed=%s bytes=%s",
                len(urls),
                len(failures),
                copied,
                extra={
                    "extra": {
                        "targets": urls,
                        "failed": sorted(failures),
                        "bytes": copied,
                    }
                },
            )
            raise FanOutError(
                f"Unable to write to one or more targets: {url}: {first}",
                targets=urls,
                failures=failures,
            ) from first
        logger.info(
            "pipe targets=%s bytes=%s",
            len(urls),
            copied,
            extra={"extra": {"targets": urls, "bytes": copied}},
        )
        return copied

    def _copy(
        self, uploads: list[_OpenUpload], failures: dict[str, BaseException]
    ) -> int:
        active = list(uploads)
        copied = 0
        while active:
            chunk = self._read_chunk()
            if not chunk:
                break
            copied += len(chunk)
            for upload in list(active):
                try:
                    upload.handle.write(chunk)
                except (StorageError, OSError, ValueError) as exc:
                    logger.warning(
                        "target %s stopped accepting data: %s",
                        upload.destination.url,
                        exc,
                    )
                    failures[upload.destination.url] = exc
                    active.remove(upload)
        return copied
