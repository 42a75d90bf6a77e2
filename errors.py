"""
Exception types shared by the thermal print studio modules.
"""

__all__ = [
    'ThermalStudioError',
    'InvalidInput',
    'InvalidParameter',
    'DecodeError',
    'ContextUnavailable',
    'DimensionMismatch',
    'ProjectFormatError',
    'ConfigValidationError',
]


class ThermalStudioError(Exception):
    """Base class for all errors raised by this package."""
    pass


class InvalidInput(ThermalStudioError, ValueError):
    """Pixel grid has an unusable shape (wrong rank, zero size, bad channels)."""
    pass


class InvalidParameter(ThermalStudioError, ValueError):
    """A processing parameter is outside its valid range."""
    pass


class DecodeError(ThermalStudioError):
    """A source image could not be decoded."""
    pass


class ContextUnavailable(ThermalStudioError):
    """The drawing surface for a render pass could not be created."""
    pass


class DimensionMismatch(ThermalStudioError):
    """A dithered raster does not match its layer size. Corrected by resampling."""
    pass


class ProjectFormatError(ThermalStudioError):
    """A project file is malformed or from an unsupported version."""
    pass


class ConfigValidationError(ThermalStudioError):
    """Raised when config validation fails."""
    pass
