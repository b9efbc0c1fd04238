"""Assignment of observation designs to individuals through an idata column."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import ConfigurationError, DataError
from .tgrid import DesignLike, DesignScreen, design_times, is_design, screen_designs

logger = logging.getLogger(__name__)

FIRST_DESIGN_ONLY_WARNING = "Multiple designs specified but no idata key; only the first design will be used."


def scalar(value: object) -> object:
    """Convert numpy scalars to plain Python values for stable dict keys."""
    if isinstance(value, np.generic):
        return value.item()
    return value


def _sorted_groups(values: Sequence[object]) -> List[object]:
    unique = list(dict.fromkeys(scalar(value) for value in values))
    try:
        return sorted(unique)
    except TypeError:
        return sorted(unique, key=str)


@dataclass(frozen=True)
class DesignAssignment:
    """Designs plus the rule that picks one per individual."""

    designs: Tuple[DesignLike, ...]
    screen: DesignScreen
    descol: Optional[str] = None
    groups: Tuple[object, ...] = ()
    warnings: Tuple[str, ...] = ()

    def design_for(self, group_value: object = None) -> DesignLike:
        if self.descol is None:
            return self.designs[0]
        key = scalar(group_value)
        try:
            position = self.groups.index(key)
        except ValueError as exc:
            raise DataError(
                f"design column '{self.descol}' value {group_value!r} has no design assigned"
            ) from exc
        return self.designs[position]

    def times_for(self, group_value: object = None) -> np.ndarray:
        return design_times(self.design_for(group_value))


def build_design_assignment(
    deslist: Union[DesignLike, Sequence[object], Mapping[object, object]],
    descol: Optional[str] = None,
    *,
    idata: Optional[pd.DataFrame] = None,
) -> DesignAssignment:
    """Validate designs and bind them to ``descol`` groups of ``idata``.

    Sorted unique values of ``descol`` map to designs by position; a mapping
    ``{group_value: design}`` binds them explicitly.  Entries that are not a
    tgrid, tgrids or numeric vector are dropped and reported in ``screen``.
    """

    explicit: Optional[Dict[object, object]] = None
    if isinstance(deslist, Mapping):
        explicit = {scalar(key): value for key, value in deslist.items()}
        candidates: List[object] = list(explicit.values())
    elif is_design(deslist):
        candidates = [deslist]
    else:
        candidates = list(deslist)  # type: ignore[arg-type]

    screen = screen_designs(candidates)
    if screen.rejected:
        logger.info(
            "design: dropped %d non-design entries at positions %s",
            len(screen.rejected),
            list(screen.rejected_positions),
        )
    if not screen.accepted:
        raise ConfigurationError("No valid tgrid objects found.")

    warnings: List[str] = []
    if descol is not None:
        if idata is None:
            raise ConfigurationError(
                f"please set idata before specifying designs (descol='{descol}' requires an idata table)."
            )
        if descol not in idata.columns:
            raise ConfigurationError(f"column {descol} does not exist in idata.")
        groups = _sorted_groups(idata[descol].dropna().tolist())
        if explicit is not None:
            missing = [group for group in groups if group not in explicit or not is_design(explicit[group])]
            if missing:
                raise ConfigurationError(f"no valid design for {descol} values {missing}")
            designs = tuple(explicit[group] for group in groups)
        else:
            if len(groups) > len(screen.accepted):
                raise ConfigurationError(
                    f"{len(groups)} values of {descol} but only {len(screen.accepted)} designs supplied"
                )
            if len(screen.accepted) > len(groups):
                logger.debug("design: %d designs unused", len(screen.accepted) - len(groups))
            designs = tuple(screen.accepted[: len(groups)])
        return DesignAssignment(
            designs=designs,  # type: ignore[arg-type]
            screen=screen,
            descol=descol,
            groups=tuple(groups),
        )

    if len(screen.accepted) > 1:
        logger.warning(FIRST_DESIGN_ONLY_WARNING)
        warnings.append(FIRST_DESIGN_ONLY_WARNING)
    return DesignAssignment(designs=screen.accepted, screen=screen, warnings=tuple(warnings))


__all__ = ["DesignAssignment", "FIRST_DESIGN_ONLY_WARNING", "build_design_assignment", "scalar"]
