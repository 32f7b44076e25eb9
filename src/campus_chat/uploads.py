"""
Blob upload boundary. Attachments are stored out of band and referenced by URL.
"""

from abc import ABC, abstractmethod

from campus_chat.models.message import FileUpload, UploadedBlob
from campus_chat.transport.http import HttpClient

UPLOAD_PATH = "/v1/uploads"


class BlobUploader(ABC):
    @abstractmethod
    async def upload(self, file: FileUpload) -> UploadedBlob:
        """Store one file and describe where it lives."""


class HttpBlobUploader(BlobUploader):
    def __init__(self, http: HttpClient, path: str = UPLOAD_PATH):
        self._http = http
        self._path = path

    async def upload(self, file: FileUpload) -> UploadedBlob:
        result = await self._http.upload(self._path, file.filename, file.content, file.mime_type)
        data = result if isinstance(result, dict) else {}
        return UploadedBlob(
            id=data.get("id") or data.get("path"),
            url=data["url"],
            filename=data.get("filename") or file.filename,
            size=data.get("size", file.size),
            mime_type=data.get("mime_type") or file.mime_type,
        )
