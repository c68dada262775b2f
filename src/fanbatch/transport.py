from __future__ import annotations

import asyncio
import mimetypes
import typing as t
from pathlib import Path

import httpx
import structlog

from fanbatch.providers.base import JSONL_CONTENT_TYPE, BaseProvider

log = structlog.get_logger(__name__)

ClientFactory = t.Callable[[], httpx.AsyncClient]


class FileTransport(t.Protocol):
    """Moves batch files between the local process and a provider."""

    async def upload_file(
        self,
        *,
        local_path: str | Path,
        display_name: str | None = None,
        content_type: str | None = None,
    ) -> str: ...

    async def upload_bytes(
        self,
        *,
        content: bytes,
        display_name: str,
        content_type: str = JSONL_CONTENT_TYPE,
    ) -> str: ...

    async def download_results(self, *, locator: str) -> str: ...


class HttpFileTransport:
    """
    ``FileTransport`` backed by a provider adapter's HTTP endpoints.

    Temporary files belong to the caller; this class only reads them.
    """

    def __init__(self, *, provider: BaseProvider, client_factory: ClientFactory) -> None:
        self._provider = provider
        self._client_factory = client_factory

    async def upload_file(
        self,
        *,
        local_path: str | Path,
        display_name: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """
        Upload a local batch file.

        Parameters
        ----------
        local_path : str | Path
            File to upload.
        display_name : str | None, optional
            Name shown by the provider, defaults to the file name.
        content_type : str | None, optional
            MIME type, guessed from the file name when omitted.

        Returns
        -------
        str
            Provider file handle.
        """
        path = Path(local_path)
        content = await asyncio.to_thread(path.read_bytes)
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0] or JSONL_CONTENT_TYPE
        return await self.upload_bytes(
            content=content,
            display_name=display_name or path.name,
            content_type=content_type,
        )

    async def upload_bytes(
        self,
        *,
        content: bytes,
        display_name: str,
        content_type: str = JSONL_CONTENT_TYPE,
    ) -> str:
        log.debug(
            event="Uploading batch file",
            provider=self._provider.name,
            display_name=display_name,
            bytes=len(content),
        )
        async with self._client_factory() as client:
            return await self._provider.upload_file(
                client=client,
                content=content,
                display_name=display_name,
                content_type=content_type,
            )

    async def download_results(self, *, locator: str) -> str:
        spec = self._provider.build_results_request(locator=locator)
        log.info(event="Downloading batch results", provider=self._provider.name, locator=locator)
        async with self._client_factory() as client:
            response = await self._provider.execute(client=client, spec=spec)
            return response.text
