"""Shared test fixtures.

Provides a stub modeling engine that never invokes CmdStan, a factory for
genuine fit results built from synthetic draws, small datasets, and stores rooted
in temporary directories.
"""

from __future__ import annotations

import sys

from typing import Callable, Optional

import numpy as np
import pandas as pd
import pytest

from fitcache import utils
from fitcache.engine.base import ModelingEngine
from fitcache.exceptions import BindError, CompileError, FitError
from fitcache.model.design import build_stan_data
from fitcache.model.spec import ModelSpec, Prior, SamplerConfig
from fitcache.model.stan.stan_code import generate_stan_code
from fitcache.results import CompiledArtifact, FitResult
from fitcache.staged_fit import StagedFitPipeline
from fitcache.store.artifact_store import ArtifactStore


SMALL_FORMULA = "log_rt ~ condition + (1 + condition | subject) + (1 | item)"

SMALL_PRIORS = (
    Prior("normal(6, 1.5)", "Intercept"),
    Prior("normal(0, 0.5)", "b"),
    Prior("exponential(1)", "sigma"),
    Prior("exponential(1)", "sd"),
    Prior("lkj(2)", "cor"),
)


# === HELPERS ===


def make_fit_result(
    spec: ModelSpec,
    sampler: Optional[SamplerConfig] = None,
    *,
    n_obs: int = 48,
    origin: str = "compile",
    data_hash: Optional[str] = None,
    n_draws: int = 50,
    n_divergent: int = 0,
    treedepth: int = 3,
    seed: int = 0,
) -> FitResult:
    """Builds a real FitResult from synthetic, well-behaved draws."""
    sampler = spec.sampler if sampler is None else sampler
    n_chains = sampler.chains
    n_rows = n_chains * n_draws
    rng = np.random.default_rng(seed)

    index = pd.DataFrame(
        {
            "chain": np.repeat(np.arange(1, n_chains + 1), n_draws),
            "iteration": np.tile(np.arange(1, n_draws + 1), n_chains),
        }
    )
    draws = index.assign(
        lp__=rng.normal(-10, 1, n_rows),
        b_Intercept=rng.normal(6, 0.1, n_rows),
        sigma=np.abs(rng.normal(0.3, 0.02, n_rows)),
    )
    divergent = np.zeros(n_rows, dtype=int)
    divergent[:n_divergent] = 1
    sample_stats = index.assign(
        accept_stat__=rng.uniform(0.7, 1.0, n_rows),
        treedepth__=np.full(n_rows, treedepth),
        divergent__=divergent,
        energy__=rng.normal(20, 3, n_rows),
    )

    return FitResult.from_draws(
        draws,
        sample_stats,
        sampler=sampler,
        compile_key=spec.compile_key(),
        data_hash=data_hash,
        n_obs=n_obs,
        origin=origin,
    )


class StubEngine(ModelingEngine):
    """Engine that records its calls and returns synthetic results.

    Data are bound with the real design code, so datasets that do not suit the
    model fail the way they would with CmdStan. Failures can be injected by adding
    "compile", "bind", or "fit" to `fail_on`. `hook`, when set, is called at the
    start of every engine call.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self.hook: Optional[Callable[[], None]] = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.hook is not None:
            self.hook()

    def _fit(
        self,
        spec: ModelSpec,
        dataset: pd.DataFrame,
        config: Optional[SamplerConfig],
        origin: str,
    ) -> FitResult:
        config = spec.sampler if config is None else config
        try:
            _, design = build_stan_data(spec, dataset, config.prior_only)
        except ValueError as e:
            raise (BindError if origin == "bind" else CompileError)(str(e)) from e
        if "fit" in self.fail_on:
            raise FitError("stub sampler failed")
        return make_fit_result(
            spec,
            config,
            n_obs=design.n_obs,
            origin=origin,
            data_hash=utils.hash_dataframe(dataset),
        )

    def compile_only(self, spec, config=None):
        self._record("compile_only")
        if "compile" in self.fail_on:
            raise CompileError("stub compiler failed")
        return CompiledArtifact(
            spec=spec,
            compile_key=spec.compile_key(),
            stan_code=generate_stan_code(spec),
            exe_bytes=b"\x7fELF stub executable",
            platform=sys.platform,
            cmdstan_version="2.36.0",
        )

    def compile_and_fit(self, spec, dataset, config=None):
        self._record("compile_and_fit")
        if "compile" in self.fail_on:
            raise CompileError("stub compiler failed")
        return self._fit(spec, dataset, config, "compile")

    def bind_and_fit(self, artifact, dataset, config=None):
        self._record("bind_and_fit")
        if "bind" in self.fail_on:
            raise BindError("stub executable could not be loaded")
        return self._fit(artifact.spec, dataset, config, "bind")


# === FIXTURES: Sample data ===


@pytest.fixture
def small_data() -> pd.DataFrame:
    """Crossed design with 4 subjects, 3 items and 2 conditions (48 rows)."""
    rng = np.random.default_rng(1)
    subject, item, condition = np.meshgrid(
        np.arange(1, 5), np.arange(1, 4), ["A", "B"], indexing="ij"
    )
    data = pd.DataFrame(
        {
            "subject": subject.ravel(),
            "item": item.ravel(),
            "condition": condition.ravel(),
        }
    )
    data = pd.concat([data, data], ignore_index=True)
    data["log_rt"] = (
        6 + 0.15 * (data["condition"] == "B") + rng.normal(0, 0.3, len(data))
    )
    return data


@pytest.fixture
def small_spec() -> ModelSpec:
    """Posterior specification of the small reaction time model."""
    return ModelSpec(
        SMALL_FORMULA,
        "gaussian",
        priors=SMALL_PRIORS,
        sampler=SamplerConfig(chains=2, iter=100, cores=2, seed=1),
    )


@pytest.fixture
def small_prior_spec(small_spec: ModelSpec) -> ModelSpec:
    """Prior-only specification, compile-equivalent to `small_spec`."""
    return small_spec.with_sampler(chains=4, sample_prior="only", refresh=0)


@pytest.fixture
def other_spec() -> ModelSpec:
    """Specification that is not compile-equivalent to `small_spec`."""
    return ModelSpec(
        SMALL_FORMULA,
        "gaussian",
        priors=SMALL_PRIORS[:-1] + (Prior("lkj(4)", "cor"),),
        sampler=SamplerConfig(chains=2, iter=100, cores=2, seed=1),
    )


@pytest.fixture
def fit_result(small_spec: ModelSpec) -> FitResult:
    """Fit result with synthetic draws from two chains."""
    return make_fit_result(small_spec)


@pytest.fixture
def fit_result_factory() -> Callable[..., FitResult]:
    """Factory building fit results from synthetic draws."""
    return make_fit_result


# === FIXTURES: Store and pipeline ===


@pytest.fixture
def store(tmp_path) -> ArtifactStore:
    """Empty artifact store in a temporary directory."""
    return ArtifactStore(tmp_path / "fits")


@pytest.fixture
def stub_engine() -> StubEngine:
    """Engine that never invokes CmdStan."""
    return StubEngine()


@pytest.fixture
def pipeline(store: ArtifactStore, stub_engine: StubEngine) -> StagedFitPipeline:
    """Silent pipeline over the temporary store and the stub engine."""
    return StagedFitPipeline(store, stub_engine, silent=True)
