"""Error taxonomy for request validation, element rendering and builds."""


class PresentationError(Exception):
    """Base class carrying a stable error kind and an HTTP status code."""

    kind = "PresentationError"
    status_code = 500

    def __init__(self, message: str):
        self.message = str(message).strip() or self.kind
        super().__init__(self.message)


class InputValidationError(PresentationError):
    """Raised when the request body is malformed or has wrongly typed fields."""

    kind = "InputValidationError"
    status_code = 400

    def __init__(self, issues):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = [str(i).strip() for i in issues if str(i).strip()]
        if not self.issues:
            self.issues = ["Invalid request"]
        super().__init__("; ".join(self.issues))


class PayloadTooLargeError(InputValidationError):
    kind = "PayloadTooLarge"
    status_code = 413


class ElementRenderError(PresentationError):
    """A single element could not be drawn. The element is skipped."""

    kind = "ElementRenderError"
    status_code = 422


class UpstreamFetchError(ElementRenderError):
    """A remote image or media reference could not be fetched in time."""

    kind = "UpstreamFetchError"
    status_code = 502


class BuildError(PresentationError):
    """The rendering library failed while assembling or encoding the deck."""

    kind = "BuildError"
    status_code = 500
