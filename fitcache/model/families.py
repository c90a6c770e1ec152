# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Response distribution families.

Each family fixes the type of the outcome, the link function between the linear
predictor and the response, whether the model has a residual scale parameter
(``sigma``), and the Stan likelihood statement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class Family:
    """A response distribution family.

    :param name: Family name (e.g., 'gaussian')
    :type name: str
    :param link: Link function name
    :type link: str
    :param outcome_type: Kind of values the outcome takes
    :type outcome_type: Literal["real", "positive", "binary", "count"]
    :param has_sigma: Whether the family has a residual scale parameter
    :type has_sigma: bool
    :param likelihood: Stan log density or mass function applied to the outcome,
        with ``{mu}`` as a placeholder for the linear predictor
    :type likelihood: str
    """

    name: str
    link: str
    outcome_type: Literal["real", "positive", "binary", "count"]
    has_sigma: bool
    likelihood: str

    def __str__(self) -> str:
        return f"{self.name}(link = '{self.link}')"

    @property
    def integer_outcome(self) -> bool:
        """Whether the outcome is declared as an integer array in Stan."""
        return self.outcome_type in {"binary", "count"}

    def canonical(self) -> dict:
        """Get the family as plain data for hashing."""
        return {"name": self.name, "link": self.link}


FAMILIES: dict[str, Family] = {
    "gaussian": Family(
        name="gaussian",
        link="identity",
        outcome_type="real",
        has_sigma=True,
        likelihood="normal_lpdf(Y | {mu}, sigma)",
    ),
    "lognormal": Family(
        name="lognormal",
        link="identity",
        outcome_type="positive",
        has_sigma=True,
        likelihood="lognormal_lpdf(Y | {mu}, sigma)",
    ),
    "bernoulli": Family(
        name="bernoulli",
        link="logit",
        outcome_type="binary",
        has_sigma=False,
        likelihood="bernoulli_logit_lpmf(Y | {mu})",
    ),
    "poisson": Family(
        name="poisson",
        link="log",
        outcome_type="count",
        has_sigma=False,
        likelihood="poisson_log_lpmf(Y | {mu})",
    ),
}
"""Supported families keyed by name."""


def get_family(family: Family | str) -> Family:
    """Look up a family by name. Family instances are returned unchanged.

    :raises ValueError: If the family is not supported
    """
    if isinstance(family, Family):
        return family
    try:
        return FAMILIES[family.lower()]
    except KeyError as e:
        raise ValueError(
            f"Unsupported family '{family}'. Options are: {', '.join(FAMILIES)}."
        ) from e
