from typing import Optional


class AssetError(Exception):
    """Base class for failures surfaced to HTTP clients.

    Each subclass fixes the status code; ``message`` is the plain-text body.
    """

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(detail or self.message)


class ClientError(AssetError):
    status_code = 400
    default_message = "Bad request"


class InvalidNameError(ClientError):
    default_message = "Invalid filename"


class MissingFileError(ClientError):
    default_message = "No file"


class UploadTransportError(ClientError):
    default_message = "Upload error"


class UploadTooLargeError(ClientError):
    status_code = 413
    default_message = "File too large"

    def __init__(self, limit: int, received: Optional[int] = None) -> None:
        detail = f"request body exceeds {limit} bytes"
        if received is not None:
            detail = f"{detail} (received {received})"
        super().__init__(detail=detail)
        self.limit = limit
        self.received = received


class NotFoundError(AssetError):
    status_code = 404
    default_message = "File not found"


class ServerError(AssetError):
    status_code = 500


class AssetWriteError(ServerError):
    default_message = "File write error"


class AssetDeleteError(ServerError):
    default_message = "Error deleting file on the server"


class MetadataUnavailableError(ServerError):
    default_message = "Metadata unavailable"
