class ConversionError(RuntimeError):
    """A document pipeline stage failed.

    ``stage`` names the step that failed (``parse``, ``normalize``,
    ``rasterize``, ``decorate``, ``upload`` or ``persist``) so callers can log
    and report it without inspecting the message.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class PdfGenerationError(ConversionError):
    """Rendering the PDF failed or produced an empty document."""
