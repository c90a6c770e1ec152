# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Results of Hamiltonian Monte Carlo (HMC) runs.

This module defines :py:class:`FitResult`, the persisted outcome of sampling a
model, and :py:class:`SamplerDiagnostics`, the summary of its sampling quality.

Fit results hold plain pandas DataFrames rather than references to CmdStan output
files, so that they remain valid after the temporary run directory is gone and can
be pickled by the artifact store. Conversion to an ArviZ ``InferenceData`` object
is available for further analysis.

Diagnostic Capabilities:
    - R-hat convergence assessment
    - Effective sample size (ESS) evaluation
    - Energy fraction of missing information (E-BFMI) analysis
    - Divergence detection
    - Tree depth saturation monitoring
"""

from __future__ import annotations

import dataclasses
import os

from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence, TYPE_CHECKING

import arviz as az
import numpy as np
import pandas as pd
import xarray as xr

from fitcache.defaults import (
    DEFAULT_EBFMI_THRESH,
    DEFAULT_ESS_THRESH,
    DEFAULT_QUANTILES,
    DEFAULT_RHAT_THRESH,
)

if TYPE_CHECKING:
    from fitcache.model.spec import SamplerConfig

# Columns of the draws table that are not parameters
_INDEX_COLUMNS = ("chain", "iteration")

# Names used by ArviZ for the CmdStan sampler statistics
_SAMPLE_STAT_NAMES = {
    "lp__": "lp",
    "accept_stat__": "acceptance_rate",
    "stepsize__": "step_size",
    "treedepth__": "tree_depth",
    "n_leapfrog__": "n_steps",
    "divergent__": "diverging",
    "energy__": "energy",
}


def _values_equal(first: Any, second: Any) -> bool:
    """Compares two field values, treating DataFrames by content and NaN as equal."""
    if isinstance(first, pd.DataFrame) or isinstance(second, pd.DataFrame):
        return (
            isinstance(first, pd.DataFrame)
            and isinstance(second, pd.DataFrame)
            and first.equals(second)
        )
    if dataclasses.is_dataclass(first) and not isinstance(first, type):
        return type(first) is type(second) and all(
            _values_equal(getattr(first, field.name), getattr(second, field.name))
            for field in dataclasses.fields(first)
        )
    if isinstance(first, tuple) and isinstance(second, tuple):
        return len(first) == len(second) and all(
            _values_equal(a, b) for a, b in zip(first, second)
        )
    if isinstance(first, float) and isinstance(second, float):
        return bool(first == second or (np.isnan(first) and np.isnan(second)))
    return bool(first == second)


def _nan_extreme(values: np.ndarray, kind: Literal["max", "min"]) -> float:
    """Maximum or minimum ignoring NaNs. NaN if there are no finite values."""
    values = np.asarray(values, dtype=float)
    values = values[~np.isnan(values)]
    if values.size == 0:
        return float("nan")
    return float(values.max() if kind == "max" else values.min())


@dataclass(frozen=True, eq=False)
class SamplerDiagnostics:
    """Summary of the sampling quality of a run.

    :param n_chains: Number of chains
    :type n_chains: int
    :param n_draws: Number of saved draws per chain
    :type n_draws: int
    :param n_divergent: Number of divergent transitions
    :type n_divergent: int
    :param n_max_treedepth: Number of transitions that saturated the tree depth
    :type n_max_treedepth: int
    :param ebfmi: E-BFMI of each chain
    :type ebfmi: tuple[float, ...]
    :param max_rhat: Largest R-hat over all parameters (NaN if undefined)
    :type max_rhat: float
    :param min_ess_bulk: Smallest bulk ESS over all parameters
    :type min_ess_bulk: float
    :param min_ess_tail: Smallest tail ESS over all parameters
    :type min_ess_tail: float
    """

    n_chains: int
    n_draws: int
    n_divergent: int
    n_max_treedepth: int
    ebfmi: tuple[float, ...]
    max_rhat: float
    min_ess_bulk: float
    min_ess_tail: float

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SamplerDiagnostics):
            return NotImplemented
        return _values_equal(self, other)

    def failures(
        self,
        ebfmi_thresh: float = DEFAULT_EBFMI_THRESH,
        r_hat_thresh: float = DEFAULT_RHAT_THRESH,
        ess_thresh: float = DEFAULT_ESS_THRESH,
    ) -> list[str]:
        """Describe every failed diagnostic test.

        Tests follow the usual conventions: any divergence or saturated tree depth
        fails, as does a chain with E-BFMI below `ebfmi_thresh`, an R-hat at or
        above `r_hat_thresh`, or an ESS at or below `ess_thresh` per chain.
        Undefined (NaN) statistics do not fail.

        :returns: Messages describing the failures. Empty if all tests pass.
        :rtype: list[str]
        """
        n_total = self.n_chains * self.n_draws
        failures = []
        if self.n_divergent > 0:
            failures.append(
                f"{self.n_divergent} of {n_total} "
                f"({self.n_divergent / n_total:.2%}) samples diverged"
            )
        if self.n_max_treedepth > 0:
            failures.append(
                f"{self.n_max_treedepth} of {n_total} "
                f"({self.n_max_treedepth / n_total:.2%}) samples reached the maximum "
                "tree depth"
            )
        if low_chains := [
            i for i, value in enumerate(self.ebfmi, 1) if value < ebfmi_thresh
        ]:
            failures.append(
                f"{len(low_chains)} of {self.n_chains} chains had a low energy "
                f"(chains {', '.join(str(i) for i in low_chains)})"
            )
        if self.max_rhat >= r_hat_thresh:
            failures.append(f"maximum R-hat {self.max_rhat:.3f} >= {r_hat_thresh}")
        ess_total = ess_thresh * self.n_chains
        for kind, value in (("bulk", self.min_ess_bulk), ("tail", self.min_ess_tail)):
            if value <= ess_total:
                failures.append(f"minimum {kind} ESS {value:.1f} <= {ess_total}")
        return failures

    @property
    def converged(self) -> bool:
        """Whether all diagnostic tests pass at the default thresholds."""
        return len(self.failures()) == 0


@dataclass(eq=False)
class FitResult:
    """Draws and diagnostics from one sampling run.

    :param draws: One row per saved iteration per chain, with ``chain``,
        ``iteration``, ``lp__`` and one column per named parameter
    :type draws: pd.DataFrame
    :param sample_stats: Sampler statistics (``divergent__``, ``treedepth__``,
        ``energy__``, ...) with the same rows as `draws`
    :type sample_stats: pd.DataFrame
    :param summary: Per-parameter summary statistics and convergence metrics
    :type summary: pd.DataFrame
    :param diagnostics: Sampling quality summary
    :type diagnostics: SamplerDiagnostics
    :param sampler: Effective sampler configuration, including the seed used
    :type sampler: SamplerConfig
    :param compile_key: Compile key of the specification that produced the fit
    :type compile_key: str
    :param data_hash: Fingerprint of the dataset, for information only
    :type data_hash: Optional[str]
    :param n_obs: Number of observations the model was fit to
    :type n_obs: int
    :param origin: Whether the executable was compiled for this fit ("compile") or
        reused from a compiled artifact ("bind")
    :type origin: Literal["compile", "bind"]
    :param prior_only: Whether the likelihood was ignored
    :type prior_only: bool

    Equality compares every field, treating DataFrames by content and NaN as
    equal, so that a result loaded from the store compares equal to the one saved.
    """

    draws: pd.DataFrame
    sample_stats: pd.DataFrame
    summary: pd.DataFrame
    diagnostics: SamplerDiagnostics
    sampler: "SamplerConfig"
    compile_key: str
    data_hash: Optional[str]
    n_obs: int
    origin: Literal["compile", "bind"]
    prior_only: bool = False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FitResult):
            return NotImplemented
        return _values_equal(self, other)

    @classmethod
    def from_draws(
        cls,
        draws: pd.DataFrame,
        sample_stats: pd.DataFrame,
        *,
        sampler: "SamplerConfig",
        compile_key: str,
        data_hash: Optional[str],
        n_obs: int,
        origin: Literal["compile", "bind"],
    ) -> "FitResult":
        """Build a result from labeled draws, computing summaries and diagnostics.

        :param draws: Labeled draws (see class documentation)
        :type draws: pd.DataFrame
        :param sample_stats: Sampler statistics
        :type sample_stats: pd.DataFrame
        :param sampler: Effective sampler configuration
        :type sampler: SamplerConfig
        :param compile_key: Compile key of the producing specification
        :type compile_key: str
        :param data_hash: Fingerprint of the dataset
        :type data_hash: Optional[str]
        :param n_obs: Number of observations
        :type n_obs: int
        :param origin: "compile" or "bind"
        :type origin: Literal["compile", "bind"]

        :returns: The fit result
        :rtype: FitResult
        """
        # Order rows by chain and iteration so that reshaping is well defined
        draws = draws.sort_values(list(_INDEX_COLUMNS)).reset_index(drop=True)
        sample_stats = sample_stats.sort_values(list(_INDEX_COLUMNS)).reset_index(
            drop=True
        )

        # Build the result without summaries, then fill them in
        res = cls(
            draws=draws,
            sample_stats=sample_stats,
            summary=pd.DataFrame(),
            diagnostics=SamplerDiagnostics(
                n_chains=0,
                n_draws=0,
                n_divergent=0,
                n_max_treedepth=0,
                ebfmi=(),
                max_rhat=float("nan"),
                min_ess_bulk=float("nan"),
                min_ess_tail=float("nan"),
            ),
            sampler=sampler,
            compile_key=compile_key,
            data_hash=data_hash,
            n_obs=n_obs,
            origin=origin,
            prior_only=sampler.prior_only,
        )
        inference_obj = res.to_inference_data()
        res.summary = res._calculate_summary(inference_obj)
        res.diagnostics = res._calculate_diagnostics(inference_obj)
        return res

    @property
    def param_names(self) -> list[str]:
        """Names of the parameter columns of the draws."""
        return [
            col for col in self.draws.columns if col not in _INDEX_COLUMNS + ("lp__",)
        ]

    @property
    def n_chains(self) -> int:
        """Number of chains."""
        return int(self.draws["chain"].nunique())

    def _by_chain(self, values: pd.Series) -> np.ndarray:
        """Reshapes a column to (chain, draw)."""
        return values.to_numpy(dtype=float).reshape(self.n_chains, -1)

    def to_inference_data(self) -> az.InferenceData:
        """Convert the result to an ArviZ InferenceData object.

        Draws go to the ``posterior`` group, even for prior-only runs. The
        ``prior_only`` attribute tells the two apart.

        :returns: InferenceData with ``posterior`` and ``sample_stats`` groups
        :rtype: az.InferenceData
        """
        posterior = {
            name: self._by_chain(self.draws[name]) for name in self.param_names
        }
        sample_stats = {
            _SAMPLE_STAT_NAMES.get(name, name): self._by_chain(self.sample_stats[name])
            for name in self.sample_stats.columns
            if name not in _INDEX_COLUMNS
        }
        if "lp__" in self.draws.columns:
            sample_stats["lp"] = self._by_chain(self.draws["lp__"])
        if "diverging" in sample_stats:
            sample_stats["diverging"] = sample_stats["diverging"].astype(bool)

        return az.from_dict(
            posterior=posterior,
            sample_stats=sample_stats,
            posterior_attrs={
                "compile_key": self.compile_key,
                "origin": self.origin,
                "prior_only": int(self.prior_only),
            },
        )

    def _calculate_summary(self, inference_obj: az.InferenceData) -> pd.DataFrame:
        """Summary statistics, quantiles, and convergence metrics per parameter."""
        if not self.param_names:
            return pd.DataFrame()
        summary = az.summary(inference_obj, kind="all", round_to="none")
        quantiles = self.quantiles()
        return pd.concat([summary, quantiles.loc[summary.index]], axis=1)

    def evaluate_sample_stats(
        self, inference_obj: Optional[az.InferenceData] = None
    ) -> xr.Dataset:
        """Flag the transitions that failed sample-level diagnostic tests.

        :param inference_obj: InferenceData of this result. Defaults to None (built
            with :py:meth:`to_inference_data`).
        :type inference_obj: Optional[az.InferenceData]

        :returns: Boolean arrays over (chain, draw). True marks a failed transition.
        :rtype: xr.Dataset

        Example:
            >>> sample_tests = res.evaluate_sample_stats()
            >>> n_diverged = sample_tests.diverged.sum().item()
        """
        if inference_obj is None:
            inference_obj = self.to_inference_data()
        sample_stats = (
            inference_obj.sample_stats
            if "sample_stats" in inference_obj.groups()
            else xr.Dataset()
        )
        shape = (self.n_chains, len(self.draws) // max(self.n_chains, 1))
        no_failures = xr.DataArray(np.zeros(shape, dtype=bool), dims=("chain", "draw"))

        # Run all tests and build a dataset
        return xr.Dataset(
            {
                "max_tree_depth_reached": (
                    sample_stats["tree_depth"] >= self.sampler.max_treedepth
                    if "tree_depth" in sample_stats
                    else no_failures
                ),
                "diverged": (
                    sample_stats["diverging"]
                    if "diverging" in sample_stats
                    else no_failures
                ),
            }
        )

    def _calculate_diagnostics(
        self, inference_obj: az.InferenceData
    ) -> SamplerDiagnostics:
        """Sample-level and variable-level diagnostics of the run."""
        sample_tests = self.evaluate_sample_stats(inference_obj)
        ebfmi = (
            tuple(float(value) for value in az.bfmi(inference_obj))
            if "energy__" in self.sample_stats
            else ()
        )

        def extreme(column: str, kind: Literal["max", "min"]) -> float:
            if column not in self.summary:
                return float("nan")
            return _nan_extreme(self.summary[column].to_numpy(), kind)

        return SamplerDiagnostics(
            n_chains=self.n_chains,
            n_draws=len(self.draws) // max(self.n_chains, 1),
            n_divergent=int(sample_tests["diverged"].sum()),
            n_max_treedepth=int(sample_tests["max_tree_depth_reached"].sum()),
            ebfmi=ebfmi,
            max_rhat=extreme("r_hat", "max"),
            min_ess_bulk=extreme("ess_bulk", "min"),
            min_ess_tail=extreme("ess_tail", "min"),
        )

    def quantiles(
        self,
        probs: Sequence[float] = DEFAULT_QUANTILES,
        params: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Quantiles of the draws of each parameter.

        :param probs: Probabilities of the quantiles. Defaults to (0.025, 0.5, 0.975).
        :type probs: Sequence[float]
        :param params: Parameters to include. Defaults to None (all).
        :type params: Optional[Sequence[str]]

        :returns: One row per parameter, one column per quantile (``q2.5``, ...)
        :rtype: pd.DataFrame

        :raises ValueError: If a probability is outside [0, 1]
        :raises KeyError: If a parameter is unknown
        """
        if not all(0 <= prob <= 1 for prob in probs):
            raise ValueError("Quantile probabilities must be between 0 and 1.")
        params = self.param_names if params is None else list(params)
        if unknown := set(params) - set(self.param_names):
            raise KeyError(f"Unknown parameters: {', '.join(sorted(unknown))}")

        quantiles = self.draws[params].quantile(list(probs)).T
        quantiles.columns = [f"q{prob * 100:g}" for prob in probs]
        return quantiles

    def diagnose(
        self,
        ebfmi_thresh: float = DEFAULT_EBFMI_THRESH,
        r_hat_thresh: float = DEFAULT_RHAT_THRESH,
        ess_thresh: float = DEFAULT_ESS_THRESH,
        silent: bool = False,
    ) -> list[str]:
        """Run the diagnostic tests and report the failures.

        :param ebfmi_thresh: E-BFMI threshold. Defaults to 0.2.
        :type ebfmi_thresh: float
        :param r_hat_thresh: R-hat threshold. Defaults to 1.01.
        :type r_hat_thresh: float
        :param ess_thresh: ESS threshold per chain. Defaults to 100.
        :type ess_thresh: float
        :param silent: Whether to suppress printed output. Defaults to False.
        :type silent: bool

        :returns: Messages describing the failures
        :rtype: list[str]

        Example:
            >>> failures = res.diagnose()
            >>> if failures:
            ...     print("Do not trust these draws")
        """
        failures = self.diagnostics.failures(
            ebfmi_thresh=ebfmi_thresh, r_hat_thresh=r_hat_thresh, ess_thresh=ess_thresh
        )
        if silent:
            return failures

        header = "Diagnostic tests results' summaries:"
        print(header)
        print("-" * len(header))
        if failures:
            for failure in failures:
                print(f"{failure[0].upper()}{failure[1:]}.")
        else:
            print("All diagnostic tests passed.")

        return failures

    def save_netcdf(self, path: str | os.PathLike) -> None:
        """Write the result to a NetCDF file for use with ArviZ.

        :param path: Destination file
        :type path: str | os.PathLike
        """
        self.to_inference_data().to_netcdf(str(path), engine="h5netcdf")
