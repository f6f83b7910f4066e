"""Error taxonomy shared by the generation path, the suggestion pipeline and voice capture.

Cancellation is not modelled here: it is ``asyncio.CancelledError`` and is never
rendered into the transcript.
"""


class GatewayError(Exception):
    """Base class for classified model gateway failures."""


class TransportError(GatewayError):
    kind = "network"

    def user_message(self) -> str:
        detail = str(self) or "unknown error"
        return f"⚠️ Network Error: {detail}"


class NoConnectionError(TransportError):
    kind = "no_connection"

    def user_message(self) -> str:
        return "⚠️ No internet connection. Check your connection."


class RequestTimeoutError(TransportError):
    kind = "timeout"

    def user_message(self) -> str:
        return "⚠️ Request timed out. Server is not responding."


class HostUnreachableError(TransportError):
    kind = "host_unreachable"

    def user_message(self) -> str:
        return "⚠️ Failed to connect to server."


class NetworkError(TransportError):
    kind = "network"


class RemoteAPIError(GatewayError):
    def __init__(self, code, message: str):
        super().__init__(f"API Error ({code}): {message}")
        self.code = code
        self.message = message

    def user_message(self) -> str:
        return f"⚠️ API Error ({self.code}): {self.message}"


class SuggestionParseError(ValueError):
    """The analysis response was not the expected JSON object."""


class CaptureError(Exception):
    def __init__(self, device: str, detail: str):
        super().__init__(f"{device} capture failed: {detail}")
        self.device = device
        self.detail = detail


NO_API_KEY_MESSAGE = "⚠️ Please set your API key."


def describe_generation_error(error: BaseException) -> str:
    if isinstance(error, (TransportError, RemoteAPIError)):
        return error.user_message()
    detail = str(error) or type(error).__name__
    return f"⚠️ Error: {detail}"


def describe_capture_error(error: BaseException, *, device: str = "Audio") -> str:
    if isinstance(error, CaptureError):
        return f"⚠️ {error.device} capture failed: {error.detail}"
    detail = str(error) or type(error).__name__
    return f"⚠️ {device} capture failed: {detail}"
