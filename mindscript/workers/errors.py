class RenderError(Exception):
    """Base for failures raised while executing a render."""


class TransientRenderError(RenderError):
    """Worth another attempt: provider timeouts, 5xx, rate limits, storage hiccups."""


class FatalRenderError(RenderError):
    """Retrying cannot help: corrupt assets, rejected input, invalid layer combinations."""
