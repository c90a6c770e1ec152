# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Binding of datasets to model formulas.

This module turns a :py:class:`pandas.DataFrame` into the data dictionary expected
by the Stan programs generated in :py:mod:`fitcache.model.stan.stan_code`, and
records the names of the coefficients so that draws can be labeled afterwards.

Coding conventions:
    - Numeric and boolean columns enter the design matrix as they are.
    - Other columns are treated as factors with treatment coding: levels are
      sorted (categorical columns keep their category order), the first level is
      the reference, and each remaining level gets a column named
      ``<variable><level>`` (e.g., ``conditionB``).
    - Interactions are element-wise products of the columns of their parts, named
      by joining the part names with ``:``.
    - Grouping factors are indexed from 1 over their sorted levels.

Rows with missing values in any referenced variable are dropped with a warning.
"""

from __future__ import annotations

import itertools
import warnings

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import numpy.typing as npt
import pandas as pd

if TYPE_CHECKING:
    from fitcache import custom_types
    from fitcache.model.spec import ModelSpec


@dataclass(frozen=True)
class GroupDesign:
    """Coding of one group-level term.

    :param group: Name of the grouping factor
    :type group: str
    :param coef_names: Names of the coefficients varying over the groups
    :type coef_names: tuple[str, ...]
    :param levels: Levels of the grouping factor, in index order
    :type levels: tuple[str, ...]
    """

    group: str
    coef_names: tuple[str, ...]
    levels: tuple[str, ...]


@dataclass(frozen=True)
class DesignInfo:
    """Names needed to label the draws of a fit.

    :param coef_names: Names of the population-level coefficients (no intercept)
    :type coef_names: tuple[str, ...]
    :param groups: Coding of the group-level terms, in formula order
    :type groups: tuple[GroupDesign, ...]
    :param n_obs: Number of observations after dropping missing values
    :type n_obs: int
    """

    coef_names: tuple[str, ...]
    groups: tuple[GroupDesign, ...]
    n_obs: int


def _levels(column: pd.Series) -> list:
    """Get the levels of a factor column in coding order."""
    if isinstance(column.dtype, pd.CategoricalDtype):
        return list(column.cat.remove_unused_categories().cat.categories)
    return sorted(column.unique().tolist())


def _variable_columns(
    variable: str, data: pd.DataFrame
) -> dict[str, npt.NDArray[np.floating]]:
    """Get the design columns contributed by a single variable."""
    column = data[variable]

    # Numbers pass through
    if pd.api.types.is_bool_dtype(column) or pd.api.types.is_numeric_dtype(column):
        return {variable: column.to_numpy(dtype=float)}

    # Factors are treatment coded
    return {
        f"{variable}{level}": (column == level).to_numpy(dtype=float)
        for level in _levels(column)[1:]
    }


def _term_columns(term: str, data: pd.DataFrame) -> dict[str, npt.NDArray[np.floating]]:
    """Get the design columns of a term, expanding interactions."""
    parts = [_variable_columns(part, data) for part in term.split(":")]
    columns = {}
    for combination in itertools.product(*(part.items() for part in parts)):
        name = ":".join(name for name, _ in combination)
        values = np.ones(len(data))
        for _, part_values in combination:
            values = values * part_values
        columns[name] = values

    if not columns:
        raise ValueError(f"Term '{term}' has no variation in the data.")
    return columns


def _design_matrix(
    terms: tuple[str, ...], data: pd.DataFrame, intercept: bool = False
) -> tuple[npt.NDArray[np.floating], tuple[str, ...]]:
    """Build the design matrix of a list of terms."""
    columns = {"Intercept": np.ones(len(data))} if intercept else {}
    for term in terms:
        columns.update(_term_columns(term, data))
    matrix = np.column_stack(list(columns.values())) if columns else np.empty(
        (len(data), 0)
    )
    return matrix, tuple(columns)


def _check_outcome(values: pd.Series, outcome_type: str) -> npt.NDArray:
    """Check the outcome against the family and convert it to the Stan type."""
    if not (
        pd.api.types.is_bool_dtype(values) or pd.api.types.is_numeric_dtype(values)
    ):
        raise ValueError(f"Outcome '{values.name}' must be numeric.")
    array = values.to_numpy(dtype=float)

    if not np.isfinite(array).all():
        raise ValueError(f"Outcome '{values.name}' contains non-finite values.")
    if outcome_type == "positive" and (array <= 0).any():
        raise ValueError(f"Outcome '{values.name}' must be strictly positive.")
    if outcome_type == "binary":
        if not np.isin(array, (0.0, 1.0)).all():
            raise ValueError(f"Outcome '{values.name}' must only contain 0 and 1.")
        return array.astype(np.int64)
    if outcome_type == "count":
        if (array < 0).any() or (array != np.round(array)).any():
            raise ValueError(
                f"Outcome '{values.name}' must contain non-negative integers."
            )
        return array.astype(np.int64)

    return array


def build_stan_data(
    spec: "ModelSpec", data: pd.DataFrame, prior_only: bool = False
) -> tuple["custom_types.StanData", DesignInfo]:
    """Build the Stan data dictionary for a model and dataset.

    :param spec: Model to bind the data to
    :type spec: ModelSpec
    :param data: Dataset. Must contain every variable referenced by the formula.
    :type data: pd.DataFrame
    :param prior_only: Whether the likelihood is to be ignored. Defaults to False.
    :type prior_only: bool

    :returns: The data dictionary and the names needed to label the draws
    :rtype: tuple[custom_types.StanData, DesignInfo]

    :raises ValueError: If variables are missing, no rows remain after dropping
        missing values, or the outcome does not suit the family
    """
    formula = spec.formula

    # All referenced variables must be present
    if missing := formula.variables - set(data.columns):
        raise ValueError(f"Missing variables in data: {', '.join(sorted(missing))}")

    # Drop incomplete rows
    variables = sorted(formula.variables)
    complete = data.loc[data[variables].notna().all(axis=1), variables]
    complete = complete.reset_index(drop=True)
    if (n_dropped := len(data) - len(complete)) > 0:
        warnings.warn(f"Dropped {n_dropped} rows with missing values.")
    if len(complete) == 0:
        raise ValueError("No complete observations in data.")

    # Outcome and population-level effects
    stan_data = {
        "N": len(complete),
        "Y": _check_outcome(complete[formula.outcome], spec.family.outcome_type),
    }
    if formula.terms:
        X, coef_names = _design_matrix(formula.terms, complete)
        stan_data["K"] = X.shape[1]
        stan_data["X"] = X
    else:
        coef_names = ()

    # Group-level effects
    groups = []
    for i, term in enumerate(formula.group_terms, 1):
        Z, group_coef_names = _design_matrix(term.terms, complete, term.intercept)
        levels = _levels(complete[term.group])
        codes = pd.Categorical(complete[term.group], categories=levels).codes
        stan_data[f"N_{i}"] = len(levels)
        stan_data[f"M_{i}"] = Z.shape[1]
        stan_data[f"J_{i}"] = codes.astype(np.int64) + 1
        stan_data[f"Z_{i}"] = Z
        groups.append(
            GroupDesign(
                group=term.group,
                coef_names=group_coef_names,
                levels=tuple(str(level) for level in levels),
            )
        )

    stan_data["prior_only"] = int(prior_only)

    return stan_data, DesignInfo(
        coef_names=coef_names, groups=tuple(groups), n_obs=len(complete)
    )
