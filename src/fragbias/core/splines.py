"""Natural cubic spline bases.

The basis is the truncated-power form of a natural cubic spline with knots
``boundary[0] < interior... < boundary[1]``. Without an intercept column it
has ``len(interior) + 1`` columns, spans the same space as R's
``ns(x, knots, Boundary.knots)`` and is linear beyond the boundary knots, so
predictions outside the training range stay finite.

Example:
    >>> import numpy as np
    >>> from fragbias.core.splines import NaturalSplineBasis
    >>> basis = NaturalSplineBasis(interior=(0.4, 0.5, 0.6), boundary=(0.0, 1.0))
    >>> basis.transform(np.array([0.1, 0.5, 0.9])).shape
    (3, 4)
"""

from __future__ import annotations

from typing import Iterable

import attrs
import numpy as np

from fragbias.errors import ConfigurationError


def _as_float_tuple(values: Iterable[float]) -> tuple[float, ...]:
    return tuple(float(v) for v in values)


@attrs.define(frozen=True)
class NaturalSplineBasis:
    """Natural cubic spline basis with fixed knots.

    Attributes:
        interior: Interior knots, strictly inside the boundary.
        boundary: (lower, upper) boundary knots.
    """

    interior: tuple[float, ...] = attrs.field(converter=_as_float_tuple)
    boundary: tuple[float, ...] = attrs.field(converter=_as_float_tuple)

    def __attrs_post_init__(self) -> None:
        if len(self.boundary) != 2 or not self.boundary[0] < self.boundary[1]:
            raise ConfigurationError(f"Invalid boundary knots {self.boundary}")
        previous = self.boundary[0]
        for knot in self.interior:
            if not previous < knot < self.boundary[1]:
                raise ConfigurationError(
                    f"Interior knots {self.interior} must increase strictly "
                    f"inside {self.boundary}"
                )
            previous = knot

    @property
    def knots(self) -> np.ndarray:
        """All knots, boundary included."""
        return np.array((self.boundary[0],) + self.interior + (self.boundary[1],))

    @property
    def n_columns(self) -> int:
        return len(self.interior) + 1

    def transform(self, x: np.ndarray) -> np.ndarray:
        """Evaluate the basis.

        Args:
            x: 1-D array of covariate values.

        Returns:
            Array of shape (len(x), n_columns).
        """
        x = np.asarray(x, dtype=np.float64)
        knots = self.knots
        last = knots[-1]
        scale = last - knots[0]

        # Scaling by the boundary width keeps columns on comparable ranges
        u = (x - knots[0]) / scale
        k = (knots - knots[0]) / scale

        def d(j: int) -> np.ndarray:
            return (
                np.maximum(u - k[j], 0.0) ** 3 - np.maximum(u - k[-1], 0.0) ** 3
            ) / (k[-1] - k[j])

        columns = [u]
        if len(knots) > 2:
            d_penultimate = d(len(knots) - 2)
            for j in range(len(knots) - 2):
                columns.append(d(j) - d_penultimate)
        return np.column_stack(columns)


def interaction_columns(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Row-wise tensor product of two bases (all pairwise column products)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    return (a[:, :, None] * b[:, None, :]).reshape(a.shape[0], -1)
