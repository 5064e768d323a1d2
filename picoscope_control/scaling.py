"""ADC count <-> millivolt conversion.

Scalar helpers use integer arithmetic truncating toward zero, matching the
driver examples, so a round trip is exact to within one LSB. The array
helpers are used when writing sample files.
"""

from typing import Union

import numpy as np


def adc_to_mv(raw: int, range_mv: int, max_adc: int) -> int:
    """Convert an ADC count to millivolts.

    Args:
        raw: ADC count in [-max_adc, max_adc]
        range_mv: Full-scale value of the channel range in mV
        max_adc: Maximum ADC count reported by the driver

    Returns:
        Value in millivolts, truncated toward zero
    """
    return _truncating_div(int(raw) * int(range_mv), int(max_adc))


def mv_to_adc(mv: int, range_mv: int, max_adc: int) -> int:
    """Convert millivolts to an ADC count, truncated toward zero."""
    return _truncating_div(int(mv) * int(max_adc), int(range_mv))


def _truncating_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def adc_to_mv_array(raw: np.ndarray, range_mv: Union[int, float], max_adc: int) -> np.ndarray:
    """Vectorised ``mv = raw * range_mv / max_adc`` as float64."""
    return raw.astype(np.float64) * (float(range_mv) / float(max_adc))


def mv_to_adc_array(mv: np.ndarray, range_mv: Union[int, float], max_adc: int,
                    dtype: str = "int16") -> np.ndarray:
    """Vectorised conversion to ADC counts, clipped to +/- max_adc."""
    counts = np.trunc(np.asarray(mv, dtype=np.float64) * (float(max_adc) / float(range_mv)))
    return np.clip(counts, -max_adc, max_adc).astype(dtype)
