import asyncio
from datetime import datetime
from typing import Any, Protocol

import structlog
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
)
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient

from opencost_exporter.errors import AuthError, UploadError
from opencost_exporter.models import Artifact

logger = structlog.get_logger()

DEFAULT_PREFIX = "opencost-allocation"
DEFAULT_UPLOAD_TIMEOUT_SECONDS = 300.0


def blob_path(prefix: "str", when: "datetime", filename: "str") -> "str":
    """
    returns the date-partitioned blob name <prefix>/<yyyy>/<mm>/<dd>/<filename>.
    """
    parts = [p for p in (prefix.strip("/"), when.strftime("%Y/%m/%d"), filename) if p]
    return "/".join(parts)


class Publisher(Protocol):
    """
    Publisher stores a serialized artifact and returns the
    location it was written to. Publishing the same artifact
    to the same location again replaces it.
    """

    async def publish(
        self,
        artifact: "Artifact",
        when: "datetime",
        metadata: "dict[str, str] | None" = None,
    ) -> "str": ...

    async def close(self) -> "None": ...


class BlobPublisher:
    """
    BlobPublisher uploads artifacts to an Azure Storage container.
    Uploads go to block blobs, which only replace the target when
    the block list is committed, so an interrupted upload leaves the
    previous content in place.
    """

    def __init__(
        self,
        account: "str",
        container: "str",
        prefix: "str" = DEFAULT_PREFIX,
        account_key: "str" = "",
        connection_string: "str" = "",
        timeout: "float" = DEFAULT_UPLOAD_TIMEOUT_SECONDS,
        service_client: "Any" = None,
    ) -> "None":
        self._account = account
        self._container = container
        self._prefix = prefix
        self._timeout = timeout
        self._credential: "Any" = None

        if service_client is not None:
            self._service = service_client
        elif connection_string:
            self._service = BlobServiceClient.from_connection_string(connection_string)
        else:
            credential: "Any" = account_key
            if not account_key:
                # managed or workload identity when no key is configured
                from azure.identity.aio import DefaultAzureCredential

                credential = DefaultAzureCredential()
                self._credential = credential
            self._service = BlobServiceClient(
                account_url=f"https://{account}.blob.core.windows.net",
                credential=credential,
            )

    @property
    def target(self) -> "str":
        return f"{self._account}/{self._container}/{self._prefix}"

    async def close(self) -> "None":
        """
        closes the storage client and any credential it owns.
        """
        await self._service.close()
        if self._credential is not None:
            await self._credential.close()

    async def publish(
        self,
        artifact: "Artifact",
        when: "datetime",
        metadata: "dict[str, str] | None" = None,
    ) -> "str":
        """
        uploads artifact under its date partition, overwriting
        any blob already stored there. Raises AuthError when the
        credential is rejected and UploadError for everything
        else that may succeed on a later attempt.
        """
        name = blob_path(self._prefix, when, artifact.filename)
        container = self._service.get_container_client(self._container)

        logger.debug("blob_upload_start", container=self._container, blob=name)
        try:
            await asyncio.wait_for(
                container.upload_blob(
                    name,
                    artifact.data,
                    overwrite=True,
                    content_settings=ContentSettings(content_type=artifact.content_type),
                    metadata=metadata or {},
                ),
                timeout=self._timeout,
            )
        except ClientAuthenticationError as exc:
            raise AuthError(f"storage credential rejected: {exc.message}") from exc
        except HttpResponseError as exc:
            if exc.status_code in (401, 403):
                raise AuthError(
                    f"storage credential rejected (HTTP {exc.status_code}): {exc.message}"
                ) from exc
            raise UploadError(
                f"upload of {name} failed (HTTP {exc.status_code}): {exc.message}"
            ) from exc
        except AzureError as exc:
            raise UploadError(f"upload of {name} failed: {exc.message}") from exc
        except TimeoutError as exc:
            raise UploadError(
                f"upload of {name} timed out after {self._timeout}s"
            ) from exc

        logger.info(
            "blob_uploaded",
            container=self._container,
            blob=name,
            size=len(artifact.data),
        )
        return f"{self._container}/{name}"
