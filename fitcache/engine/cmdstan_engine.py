# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Modeling engine backed by CmdStan through cmdstanpy.

The engine generates a Stan program from a model specification, compiles it with
:py:class:`cmdstanpy.CmdStanModel`, and samples from it. Compiled executables are
captured as bytes in a :py:class:`~fitcache.results.CompiledArtifact`, so that they
can be persisted by the artifact store and reused later without recompiling.

All work happens in temporary directories. Draws are read back into pandas
DataFrames and labeled following brms conventions (``b_Intercept``,
``sd_subject__Intercept``, ``r_subject[1,conditionB]``, ...) before the temporary
files are removed.

Failures are reported with the exception types of :py:mod:`fitcache.exceptions`:

    - :py:class:`~fitcache.exceptions.CompileError` for compiler and toolchain
      failures, and for datasets that do not suit the model on the compile path
    - :py:class:`~fitcache.exceptions.BindError` for compiled artifacts that cannot
      be loaded on this machine or cannot accept the dataset
    - :py:class:`~fitcache.exceptions.FitError` for sampler failures, prior-only
      sampling with improper priors, and (when requested) failed diagnostics
"""

from __future__ import annotations

import os
import re
import sys
import warnings

from tempfile import TemporaryDirectory
from typing import Any, Optional, TYPE_CHECKING

import pandas as pd

from cmdstanpy import CmdStanModel, cmdstan_version

import fitcache

from fitcache import utils
from fitcache.config import RuntimeSettings
from fitcache.defaults import (
    DEFAULT_CPP_OPTIONS,
    DEFAULT_MODEL_NAME,
    DEFAULT_STANC_OPTIONS,
)
from fitcache.engine.base import ModelingEngine
from fitcache.exceptions import BindError, CompileError, FitError
from fitcache.model.design import build_stan_data, DesignInfo
from fitcache.model.stan.stan_code import generate_stan_code
from fitcache.results import CompiledArtifact, FitResult

if TYPE_CHECKING:
    from fitcache import custom_types
    from fitcache.model.spec import ModelSpec, SamplerConfig

# Columns added by cmdstanpy to index the draws
_CMDSTANPY_INDEX = {"chain__": "chain", "iter__": "iteration", "draw__": None}

# Indexed Stan variables: name, optional group index, and element indices
_STAN_VARIABLE = re.compile(r"^([A-Za-z]+)(?:_(\d+))?\[([\d,]+)\]$")


def label_draws(
    raw: pd.DataFrame, design: DesignInfo
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Split and label the draws returned by ``CmdStanMCMC.draws_pd``.

    :param raw: Draws as returned by cmdstanpy
    :type raw: pd.DataFrame
    :param design: Coefficient and level names of the bound dataset
    :type design: DesignInfo

    :returns: The labeled parameter draws (with ``chain``, ``iteration`` and
        ``lp__``) and the sampler statistics (with ``chain`` and ``iteration``)
    :rtype: tuple[pd.DataFrame, pd.DataFrame]
    """
    index = raw[[col for col in _CMDSTANPY_INDEX if _CMDSTANPY_INDEX[col]]].rename(
        columns=_CMDSTANPY_INDEX
    )
    index = index.astype(int)

    draw_columns = {}
    stat_columns = {}
    for column in raw.columns:
        if column in _CMDSTANPY_INDEX:
            continue

        # Sampler statistics. The log density stays with the draws.
        if column == "lp__":
            draw_columns["lp__"] = raw[column]
        elif column.endswith("__"):
            stat_columns[column] = raw[column]

        # Scalar parameters
        elif column == "Intercept":
            draw_columns["b_Intercept"] = raw[column]
        elif column == "sigma":
            draw_columns["sigma"] = raw[column]

        # Indexed parameters
        elif name := _label_indexed(column, design):
            draw_columns[name] = raw[column]

    draws = pd.concat([index, pd.DataFrame(draw_columns)], axis=1)
    sample_stats = pd.concat([index, pd.DataFrame(stat_columns)], axis=1)
    return draws, sample_stats


def _label_indexed(column: str, design: DesignInfo) -> Optional[str]:
    """Label an indexed Stan variable. None for variables that are not reported."""
    if not (match := _STAN_VARIABLE.match(column)):
        return None
    variable, group_index, indices = match.groups()
    indices = [int(i) - 1 for i in indices.split(",")]

    # Population-level coefficients
    if variable == "b" and group_index is None:
        return f"b_{design.coef_names[indices[0]]}"

    # Everything else belongs to a group-level term
    if group_index is None:
        return None
    group = design.groups[int(group_index) - 1]
    if variable == "sd":
        return f"sd_{group.group}__{group.coef_names[indices[0]]}"
    if variable == "Cor" and indices[0] < indices[1]:
        first, second = (group.coef_names[i] for i in indices)
        return f"cor_{group.group}__{first}__{second}"
    if variable == "r":
        level, coef = group.levels[indices[0]], group.coef_names[indices[1]]
        return f"r_{group.group}[{level},{coef}]"

    # Standardized effects, Cholesky factors, and redundant correlations
    return None


class CmdStanEngine(ModelingEngine):
    """Modeling engine that compiles and samples with CmdStan.

    :param settings: Operator settings. Defaults to None (read from the
        environment).
    :type settings: Optional[RuntimeSettings]
    :param stanc_options: Options for the Stan compiler. Defaults to None
        (``DEFAULT_STANC_OPTIONS``).
    :type stanc_options: Optional[dict[str, Any]]
    :param cpp_options: Options for the C++ compiler. Defaults to None
        (``DEFAULT_CPP_OPTIONS``).
    :type cpp_options: Optional[dict[str, Any]]
    :param strict_diagnostics: Whether failed convergence diagnostics raise a
        FitError instead of a warning. Defaults to False.
    :type strict_diagnostics: bool
    :param show_console: Whether to stream CmdStan console output. Defaults to
        False.
    :type show_console: bool
    """

    def __init__(
        self,
        settings: Optional[RuntimeSettings] = None,
        stanc_options: Optional[dict[str, Any]] = None,
        cpp_options: Optional[dict[str, Any]] = None,
        strict_diagnostics: bool = False,
        show_console: bool = False,
    ):
        self.settings = RuntimeSettings.from_env() if settings is None else settings
        self.stanc_options = dict(stanc_options or DEFAULT_STANC_OPTIONS)
        self.cpp_options = dict(cpp_options or DEFAULT_CPP_OPTIONS)
        self.strict_diagnostics = strict_diagnostics
        self.show_console = show_console

        # Point cmdstanpy at the configured installation
        self.settings.apply()

    def _build(self, spec: "ModelSpec", workdir: str) -> tuple[CmdStanModel, str]:
        """Generate, write, and compile the Stan program of `spec` in `workdir`."""
        stan_code = generate_stan_code(spec)
        stan_file = os.path.join(workdir, f"{DEFAULT_MODEL_NAME}.stan")
        with open(stan_file, "w", encoding="utf-8") as f:
            f.write(stan_code)

        try:
            model = CmdStanModel(
                stan_file=stan_file,
                stanc_options=dict(self.stanc_options),
                cpp_options=dict(self.cpp_options),
            )
        except (ValueError, RuntimeError, OSError) as e:
            raise CompileError(f"Failed to compile '{spec.formula}': {e}") from e

        return model, stan_code

    def compile_only(
        self, spec: "ModelSpec", config: Optional["SamplerConfig"] = None
    ) -> CompiledArtifact:
        """Compile `spec` without binding data.

        :param spec: Model to compile
        :type spec: ModelSpec
        :param config: Unused. Compilation does not depend on sampler settings.
        :type config: Optional[SamplerConfig]

        :returns: The compiled artifact
        :rtype: CompiledArtifact

        :raises CompileError: If compilation fails
        """
        with TemporaryDirectory() as workdir:
            model, stan_code = self._build(spec, workdir)
            with open(model.exe_file, "rb") as f:
                exe_bytes = f.read()

        version = cmdstan_version()
        return CompiledArtifact(
            spec=spec,
            compile_key=spec.compile_key(),
            stan_code=stan_code,
            exe_bytes=exe_bytes,
            platform=sys.platform,
            cmdstan_version=None if version is None else ".".join(map(str, version)),
        )

    def compile_and_fit(
        self,
        spec: "ModelSpec",
        dataset: pd.DataFrame,
        config: Optional["SamplerConfig"] = None,
    ) -> FitResult:
        """Compile `spec` and fit it to `dataset`.

        :raises CompileError: If compilation fails or the dataset does not suit the
            model
        :raises FitError: If sampling fails
        """
        config = spec.sampler if config is None else config

        # Check the data before paying for compilation
        try:
            stan_data, design = build_stan_data(spec, dataset, config.prior_only)
        except ValueError as e:
            raise CompileError(f"Data does not suit '{spec.formula}': {e}") from e

        with TemporaryDirectory() as workdir:
            model, _ = self._build(spec, workdir)
            return self._sample(
                model=model,
                spec=spec,
                stan_data=stan_data,
                design=design,
                dataset=dataset,
                config=config,
                origin="compile",
                output_dir=workdir,
            )

    def bind_and_fit(
        self,
        artifact: CompiledArtifact,
        dataset: pd.DataFrame,
        config: Optional["SamplerConfig"] = None,
    ) -> FitResult:
        """Fit `dataset` with a previously compiled artifact.

        :raises BindError: If the artifact cannot be loaded on this machine or
            cannot accept the dataset
        :raises FitError: If sampling fails
        """
        spec = artifact.spec
        config = spec.sampler if config is None else config

        # The executable must have been built for this platform
        if artifact.platform != sys.platform:
            raise BindError(
                f"Artifact was compiled on '{artifact.platform}' and cannot run on "
                f"'{sys.platform}'."
            )

        try:
            stan_data, design = build_stan_data(spec, dataset, config.prior_only)
        except ValueError as e:
            raise BindError(f"Data cannot be bound to the compiled model: {e}") from e

        with TemporaryDirectory() as workdir:
            _, exe_file = artifact.materialize(workdir)
            try:
                model = CmdStanModel(exe_file=exe_file)
            except (ValueError, RuntimeError, OSError) as e:
                raise BindError(f"Cannot load the compiled executable: {e}") from e

            return self._sample(
                model=model,
                spec=spec,
                stan_data=stan_data,
                design=design,
                dataset=dataset,
                config=config,
                origin="bind",
                output_dir=workdir,
            )

    def parallel_chains(self, config: "SamplerConfig") -> int:
        """Number of chains run in parallel for `config`."""
        return min(config.chains, config.cores, self.settings.cores)

    def _sample(
        self,
        model: CmdStanModel,
        spec: "ModelSpec",
        stan_data: "custom_types.StanData",
        design: DesignInfo,
        dataset: pd.DataFrame,
        config: "SamplerConfig",
        origin: str,
        output_dir: str,
    ) -> FitResult:
        """Run the sampler and package the draws."""
        # Sampling from an improper prior is meaningless
        if config.prior_only and (improper := spec.improper_classes()):
            raise FitError(
                "Cannot sample from the prior: flat priors on "
                f"{', '.join(improper)}. Assign proper priors to these classes."
            )

        # If a seed is not provided, use the global random number generator to get
        # one
        if config.seed is None:
            config = config.replace(seed=int(fitcache.RNG.integers(0, 2**31 - 1)))

        # Run the sampler
        try:
            fit = model.sample(
                data=stan_data,
                chains=config.chains,
                parallel_chains=self.parallel_chains(config),
                iter_warmup=config.n_warmup,
                iter_sampling=config.n_sampling,
                thin=config.thin,
                seed=config.seed,
                adapt_delta=config.adapt_delta,
                max_treedepth=config.max_treedepth,
                refresh=config.refresh if config.refresh > 0 else None,
                show_progress=config.refresh > 0,
                show_console=self.show_console,
                output_dir=output_dir,
            )
        except (RuntimeError, ValueError) as e:
            raise FitError(f"Sampling failed: {e}") from e

        # Label the draws and summarize
        draws, sample_stats = label_draws(fit.draws_pd(), design)
        res = FitResult.from_draws(
            draws,
            sample_stats,
            sampler=config,
            compile_key=spec.compile_key(),
            data_hash=utils.hash_dataframe(dataset),
            n_obs=design.n_obs,
            origin=origin,
        )

        # Report failed diagnostics of posterior fits
        if not config.prior_only and (failures := res.diagnostics.failures()):
            message = "Sampler diagnostics failed: " + "; ".join(failures)
            if self.strict_diagnostics:
                raise FitError(message, diagnostics=res.diagnostics)
            warnings.warn(message)

        return res
