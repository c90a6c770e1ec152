# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Immutable model specifications.

A :py:class:`ModelSpec` describes what is to be computed: the formula, the response
family, the priors, and the sampler configuration. It is independent of whether any
data is bound to it.

Two specifications are *compile-equivalent* when they would produce interchangeable
compiled programs: same formula (including the grouping structure), same family,
and same priors once class-wide defaults have been filled in. Sampler settings and
data play no part in compile-equivalence. Equivalence is decided by comparing
:py:meth:`ModelSpec.compile_key`, a SHA-256 digest of the canonical serialization
of the compile-relevant fields.

Example:
    >>> spec = ModelSpec(
    ...     "log_rt ~ condition + (1 + condition | subject) + (1 | item)",
    ...     "gaussian",
    ...     priors=(
    ...         Prior("normal(6, 1.5)", "Intercept"),
    ...         Prior("normal(0, 0.5)", "b"),
    ...         Prior("exponential(1)", "sigma"),
    ...         Prior("exponential(1)", "sd"),
    ...         Prior("lkj(2)", "cor"),
    ...     ),
    ...     sampler=SamplerConfig(chains=2, iter=1000, cores=2),
    ... )
    >>> spec.compile_equivalent(spec.with_sampler(sample_prior="only"))
    True
"""

from __future__ import annotations

import dataclasses
import re

from dataclasses import dataclass, field
from typing import Literal, Optional, TYPE_CHECKING

from fitcache import utils
from fitcache.defaults import (
    DEFAULT_ADAPT_DELTA,
    DEFAULT_CHAINS,
    DEFAULT_CORES,
    DEFAULT_ITER,
    DEFAULT_MAX_TREEDEPTH,
    DEFAULT_PRIORS,
    DEFAULT_REFRESH,
)
from fitcache.model.families import Family, get_family
from fitcache.model.formula import Formula

if TYPE_CHECKING:
    from fitcache import custom_types

# Supported prior distributions and their number of arguments
_PRIOR_DISTRIBUTIONS = {
    "normal": 2,
    "student_t": 3,
    "cauchy": 2,
    "double_exponential": 2,
    "logistic": 2,
    "exponential": 1,
    "gamma": 2,
    "inv_gamma": 2,
    "lognormal": 2,
    "weibull": 2,
    "lkj": 1,
}
_DISTRIBUTION_PATTERN = re.compile(r"^\s*([a-z_]+)\s*\((.*)\)\s*$")
PARAMETER_CLASSES = ("Intercept", "b", "sigma", "sd", "cor")


@dataclass(frozen=True)
class Prior:
    """A prior assignment for one class of parameters.

    :param distribution: Distribution in Stan notation, such as ``normal(0, 1)``.
        ``lkj(eta)`` is used for correlation matrices.
    :type distribution: str
    :param class_: Parameter class the prior applies to
    :type class_: custom_types.ParameterClass
    :param group: Grouping factor, for ``sd`` and ``cor`` priors that apply to a
        single group-level term only. Defaults to None (all terms).
    :type group: Optional[str]

    :raises ValueError: If the distribution is unsupported, has the wrong number of
        arguments, or does not suit the parameter class
    """

    distribution: str
    class_: "custom_types.ParameterClass"
    group: Optional[str] = None

    def __post_init__(self) -> None:
        # Check the class
        if self.class_ not in PARAMETER_CLASSES:
            raise ValueError(
                f"Unknown parameter class '{self.class_}'. Options are: "
                f"{', '.join(PARAMETER_CLASSES)}."
            )
        if self.group is not None and self.class_ not in {"sd", "cor"}:
            raise ValueError("Only 'sd' and 'cor' priors can be restricted to a group.")

        # Parse the distribution
        if not (match := _DISTRIBUTION_PATTERN.match(self.distribution)):
            raise ValueError(f"Cannot parse prior distribution '{self.distribution}'.")
        name = match.group(1)
        if name not in _PRIOR_DISTRIBUTIONS:
            raise ValueError(
                f"Unsupported prior distribution '{name}'. Options are: "
                f"{', '.join(_PRIOR_DISTRIBUTIONS)}."
            )
        try:
            args = tuple(float(arg) for arg in match.group(2).split(","))
        except ValueError as e:
            raise ValueError(
                f"Prior arguments must be numbers: '{self.distribution}'."
            ) from e
        if len(args) != _PRIOR_DISTRIBUTIONS[name]:
            raise ValueError(
                f"'{name}' takes {_PRIOR_DISTRIBUTIONS[name]} argument(s), got "
                f"{len(args)}."
            )

        # Correlation matrices take LKJ priors and nothing else does
        if (name == "lkj") != (self.class_ == "cor"):
            raise ValueError(
                "'lkj' priors are required for, and only valid for, 'cor'."
            )

        # Store the normalized form
        object.__setattr__(
            self, "distribution", f"{name}({', '.join(repr(arg) for arg in args)})"
        )

    def __str__(self) -> str:
        group = "" if self.group is None else f", group = {self.group}"
        return f"prior({self.distribution}, class = {self.class_}{group})"

    @property
    def name(self) -> str:
        """Name of the distribution."""
        return self.distribution.split("(", 1)[0]

    @property
    def args(self) -> tuple[float, ...]:
        """Arguments of the distribution."""
        body = self.distribution[len(self.name) + 1 : -1]
        return tuple(float(arg) for arg in body.split(","))

    def stan_statement(self, target: str) -> str:
        """Get the Stan statement incrementing the log density with this prior.

        :param target: Stan expression the prior is placed on
        :type target: str

        :returns: Stan statement
        :rtype: str
        """
        stan_name = "lkj_corr_cholesky" if self.name == "lkj" else self.name
        args = ", ".join(repr(arg) for arg in self.args)
        return f"target += {stan_name}_lpdf({target} | {args});"

    def canonical(self) -> dict:
        """Get the prior as plain data for hashing."""
        return {
            "distribution": self.distribution,
            "class": self.class_,
            "group": self.group,
        }


@dataclass(frozen=True)
class SamplerConfig:
    """Sampler settings for one run. brms conventions are used, so `iter` counts
    the warmup iterations.

    :param chains: Number of Markov chains. Defaults to 4.
    :type chains: int
    :param iter: Total iterations per chain, warmup included. Defaults to 2000.
    :type iter: int
    :param warmup: Warmup iterations per chain. Defaults to None (half of `iter`).
    :type warmup: Optional[int]
    :param cores: Number of cores requested. Defaults to 1.
    :type cores: int
    :param seed: Random seed. Defaults to None (drawn from ``fitcache.RNG``).
    :type seed: Optional[int]
    :param refresh: Iterations between progress updates; 0 silences them.
    :type refresh: int
    :param thin: Period for saving draws. Defaults to 1.
    :type thin: int
    :param adapt_delta: Target acceptance rate. Defaults to 0.8.
    :type adapt_delta: float
    :param max_treedepth: Maximum NUTS tree depth. Defaults to 10.
    :type max_treedepth: int
    :param sample_prior: "only" ignores the likelihood and draws from the prior.
        Defaults to "no".
    :type sample_prior: Literal["no", "only"]

    :raises ValueError: If any setting is out of range
    """

    chains: int = DEFAULT_CHAINS
    iter: int = DEFAULT_ITER
    warmup: Optional[int] = None
    cores: int = DEFAULT_CORES
    seed: Optional[int] = None
    refresh: int = DEFAULT_REFRESH
    thin: int = 1
    adapt_delta: float = DEFAULT_ADAPT_DELTA
    max_treedepth: int = DEFAULT_MAX_TREEDEPTH
    sample_prior: Literal["no", "only"] = "no"

    def __post_init__(self) -> None:
        for name in ("chains", "iter", "cores", "thin", "max_treedepth"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer.")
        if self.warmup is not None and not 0 <= self.warmup < self.iter:
            raise ValueError("warmup must be non-negative and smaller than iter.")
        if self.refresh < 0:
            raise ValueError("refresh must be non-negative.")
        if not 0 < self.adapt_delta < 1:
            raise ValueError("adapt_delta must be between 0 and 1.")
        if self.sample_prior not in {"no", "only"}:
            raise ValueError("sample_prior must be 'no' or 'only'.")

    @property
    def n_warmup(self) -> int:
        """Number of warmup iterations per chain."""
        return self.iter // 2 if self.warmup is None else self.warmup

    @property
    def n_sampling(self) -> int:
        """Number of post-warmup iterations per chain."""
        return self.iter - self.n_warmup

    @property
    def prior_only(self) -> bool:
        """Whether the likelihood is ignored."""
        return self.sample_prior == "only"

    def replace(self, **changes) -> "SamplerConfig":
        """Get a copy with some settings changed."""
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class ModelSpec:
    """Immutable description of a model and how to sample from it.

    :param formula: Model formula, parsed if given as a string
    :type formula: Formula
    :param family: Response family, looked up if given as a string
    :type family: Family
    :param priors: Prior assignments, at most one per class (and group)
    :type priors: tuple[Prior, ...]
    :param sampler: Sampler configuration
    :type sampler: SamplerConfig

    :raises ValueError: If the formula is malformed, the family unknown, or a prior
        targets a parameter class that does not exist in the model
    """

    formula: Formula
    family: Family
    priors: tuple[Prior, ...] = ()
    sampler: SamplerConfig = field(default_factory=SamplerConfig)

    def __post_init__(self) -> None:
        # Parse and look up
        if isinstance(self.formula, str):
            object.__setattr__(self, "formula", Formula.parse(self.formula))
        object.__setattr__(self, "family", get_family(self.family))
        object.__setattr__(self, "priors", tuple(self.priors))

        # Every prior must target a parameter class present in the model
        slots = self.parameter_slots()
        seen = set()
        for prior in self.priors:
            key = (prior.class_, prior.group)
            if key in seen:
                raise ValueError(f"Duplicate prior for {key}.")
            seen.add(key)
            if prior.group is None:
                present = any(class_ == prior.class_ for class_, _ in slots)
            else:
                present = key in slots
            if not present:
                raise ValueError(
                    f"{prior} targets a parameter that is not in the model."
                )

    def parameter_slots(self) -> tuple[tuple[str, Optional[str]], ...]:
        """Get the parameter classes of the model as ``(class, group)`` pairs.

        :returns: Pairs in canonical order. `group` is None for classes that are
            not tied to a group-level term.
        :rtype: tuple[tuple[str, Optional[str]], ...]
        """
        slots = []
        if self.formula.intercept:
            slots.append(("Intercept", None))
        if self.formula.terms:
            slots.append(("b", None))
        if self.family.has_sigma:
            slots.append(("sigma", None))
        slots.extend(("sd", term.group) for term in self.formula.group_terms)
        slots.extend(
            ("cor", term.group) for term in self.formula.group_terms if term.correlated
        )
        return tuple(slots)

    def prior_for(self, class_: str, group: Optional[str] = None) -> Optional[Prior]:
        """Get the prior in effect for a parameter class.

        Group-specific assignments take precedence over class-wide ones, which take
        precedence over the package defaults.

        :param class_: Parameter class
        :type class_: str
        :param group: Grouping factor for ``sd`` and ``cor``. Defaults to None.
        :type group: Optional[str]

        :returns: The prior, or None for a flat prior
        :rtype: Optional[Prior]
        """
        by_key = {(prior.class_, prior.group): prior for prior in self.priors}
        if group is not None and (class_, group) in by_key:
            return by_key[(class_, group)]
        if (class_, None) in by_key:
            return by_key[(class_, None)]
        if (default := DEFAULT_PRIORS[class_]) is None:
            return None
        return Prior(default, class_)

    def improper_classes(self) -> tuple[str, ...]:
        """Get the parameter classes of the model that have flat priors."""
        return tuple(
            class_
            for class_, group in self.parameter_slots()
            if self.prior_for(class_, group) is None
        )

    def canonical(self) -> dict:
        """Get the compile-relevant fields as plain data.

        Priors are resolved per parameter slot, so assigning a prior equal to the
        default gives the same result as leaving it out.
        """
        priors = []
        for class_, group in self.parameter_slots():
            prior = self.prior_for(class_, group)
            priors.append(
                {
                    "class": class_,
                    "group": group,
                    "distribution": None if prior is None else prior.distribution,
                }
            )
        return {
            "formula": self.formula.canonical(),
            "family": self.family.canonical(),
            "priors": priors,
        }

    def compile_key(self) -> str:
        """Get the digest identifying the compiled representation of this model."""
        return utils.hash_canonical(self.canonical())

    def compile_equivalent(self, other: "ModelSpec") -> bool:
        """Whether `other` would compile to an interchangeable program."""
        return self.compile_key() == other.compile_key()

    def with_sampler(self, **changes) -> "ModelSpec":
        """Get a copy with some sampler settings changed.

        Example:
            >>> prior_spec = spec.with_sampler(sample_prior="only", chains=4)
        """
        return dataclasses.replace(self, sampler=self.sampler.replace(**changes))
