"""
Exception types raised by the sediment mapping pipeline.

InputValidationError  -- the data is unusable (bad fractions, zero ALR
                         denominator, non co-registered rasters).
IllPosedError         -- a statistical step cannot produce a meaningful
                         answer (variogram fit, VIF search, folds, FFS).
"""


class SedmapError(Exception):
    """Base class for all pipeline errors."""


class InputValidationError(SedmapError, ValueError):
    """Input data violates a precondition; halt before model fitting."""


class IllPosedError(SedmapError, RuntimeError):
    """A statistical estimate is undefined for this response channel."""
