"""Tests for engine/cmdstan_engine.py, with cmdstanpy replaced by a fake model."""

from __future__ import annotations

import dataclasses
import os
import sys

import numpy as np
import pandas as pd
import pytest

from cmdstanpy import CmdStanModel

import fitcache

from fitcache.config import RuntimeSettings
from fitcache.engine import cmdstan_engine
from fitcache.engine.cmdstan_engine import CmdStanEngine, label_draws
from fitcache.exceptions import BindError, CompileError, FitError
from fitcache.model.design import build_stan_data
from fitcache.model.spec import ModelSpec

# Short synthetic chains never reach the ESS threshold
pytestmark = pytest.mark.filterwarnings("ignore:Sampler diagnostics failed")


# === HELPERS: Fake cmdstanpy objects ===


def _raw_draws(stan_data: dict, chains: int, n_draws: int, n_divergent: int = 0):
    """Draws laid out the way ``CmdStanMCMC.draws_pd`` returns them."""
    rng = np.random.default_rng(0)
    n_rows = chains * n_draws
    columns = {
        "chain__": np.repeat(np.arange(1, chains + 1), n_draws).astype(float),
        "iter__": np.tile(np.arange(1, n_draws + 1), chains).astype(float),
        "draw__": np.arange(1, n_rows + 1).astype(float),
        "lp__": rng.normal(-10, 1, n_rows),
        "accept_stat__": rng.uniform(0.7, 1, n_rows),
        "stepsize__": np.full(n_rows, 0.5),
        "treedepth__": np.full(n_rows, 3.0),
        "n_leapfrog__": np.full(n_rows, 7.0),
        "divergent__": (np.arange(n_rows) < n_divergent).astype(float),
        "energy__": rng.normal(20, 3, n_rows),
        "Intercept": rng.normal(6, 0.1, n_rows),
    }
    for k in range(1, stan_data.get("K", 0) + 1):
        columns[f"b[{k}]"] = rng.normal(0, 0.1, n_rows)
    if "sigma" not in columns:
        columns["sigma"] = np.abs(rng.normal(0.3, 0.02, n_rows))

    i = 1
    while f"N_{i}" in stan_data:
        n_levels, n_coefs = stan_data[f"N_{i}"], stan_data[f"M_{i}"]
        for m in range(1, n_coefs + 1):
            columns[f"sd_{i}[{m}]"] = np.abs(rng.normal(0.2, 0.02, n_rows))
        for m in range(1, n_coefs + 1):
            for level in range(1, n_levels + 1):
                columns[f"z_{i}[{m},{level}]"] = rng.normal(0, 1, n_rows)
        for m in range(1, n_coefs + 1):
            for level in range(1, n_levels + 1):
                columns[f"r_{i}[{level},{m}]"] = rng.normal(0, 0.2, n_rows)
        if n_coefs > 1:
            for j in range(1, n_coefs + 1):
                for k in range(1, n_coefs + 1):
                    columns[f"L_{i}[{j},{k}]"] = rng.normal(0, 0.1, n_rows)
                    columns[f"Cor_{i}[{j},{k}]"] = rng.uniform(-0.5, 0.5, n_rows)
        i += 1

    return pd.DataFrame(columns)


class FakeFit:
    def __init__(self, raw: pd.DataFrame):
        self.raw = raw

    def draws_pd(self) -> pd.DataFrame:
        return self.raw.copy()


class FakeModel(CmdStanModel):
    """Stands in for CmdStanModel: "compiles" instantly and samples synthetic draws."""

    stan_file = None
    exe_file = None
    instances: list["FakeModel"] = []
    compile_error: Exception | None = None
    sample_error: Exception | None = None
    n_divergent = 0

    # pylint: disable-next=super-init-not-called
    def __init__(self, stan_file=None, exe_file=None, **kwargs):
        self.stan_file = stan_file
        self.kwargs = kwargs
        self.sample_kwargs = None
        FakeModel.instances.append(self)

        if stan_file is not None:
            if FakeModel.compile_error is not None:
                raise FakeModel.compile_error
            self.exe_file = os.path.splitext(stan_file)[0]
            with open(self.exe_file, "wb") as f:
                f.write(b"\x7fELF compiled " + os.path.basename(stan_file).encode())
        else:
            self.exe_file = exe_file

    def __repr__(self) -> str:
        return f"FakeModel(exe_file={self.exe_file!r})"

    def sample(self, **kwargs):
        self.sample_kwargs = kwargs
        if FakeModel.sample_error is not None:
            raise FakeModel.sample_error
        n_draws = kwargs["iter_sampling"] // kwargs["thin"]
        return FakeFit(
            _raw_draws(kwargs["data"], kwargs["chains"], n_draws, FakeModel.n_divergent)
        )


@pytest.fixture(autouse=True)
def fake_cmdstanpy(monkeypatch):
    """Replace cmdstanpy in the engine module for every test."""
    monkeypatch.setattr(cmdstan_engine, "CmdStanModel", FakeModel)
    monkeypatch.setattr(cmdstan_engine, "cmdstan_version", lambda: (2, 36))
    monkeypatch.setattr(FakeModel, "instances", [])
    monkeypatch.setattr(FakeModel, "compile_error", None)
    monkeypatch.setattr(FakeModel, "sample_error", None)
    monkeypatch.setattr(FakeModel, "n_divergent", 0)


@pytest.fixture
def engine(tmp_path) -> CmdStanEngine:
    return CmdStanEngine(RuntimeSettings(cores=2, fits_dir=str(tmp_path)))


# === TESTS: Labeling ===


class TestLabelDraws:
    def test_names(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        draws, _ = label_draws(_raw_draws(stan_data, 2, 10), design)

        assert list(draws.columns[:5]) == [
            "chain",
            "iteration",
            "lp__",
            "b_Intercept",
            "b_conditionB",
        ]
        for name in (
            "sigma",
            "sd_subject__Intercept",
            "sd_subject__conditionB",
            "sd_item__Intercept",
            "cor_subject__Intercept__conditionB",
            "r_subject[1,Intercept]",
            "r_subject[4,conditionB]",
            "r_item[3,Intercept]",
        ):
            assert name in draws.columns

    def test_unreported_variables_are_dropped(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        draws, _ = label_draws(_raw_draws(stan_data, 2, 10), design)
        dropped = ("z_", "L_", "Cor_")
        assert not [col for col in draws.columns if col.startswith(dropped)]
        assert "cor_subject__conditionB__Intercept" not in draws.columns
        assert "draw__" not in draws.columns

    def test_sample_stats(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        draws, sample_stats = label_draws(_raw_draws(stan_data, 2, 10), design)
        assert list(sample_stats.columns) == [
            "chain",
            "iteration",
            "accept_stat__",
            "stepsize__",
            "treedepth__",
            "n_leapfrog__",
            "divergent__",
            "energy__",
        ]
        assert sample_stats["chain"].dtype.kind == "i"
        assert len(sample_stats) == len(draws) == 20

    def test_number_of_group_effects(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        draws, _ = label_draws(_raw_draws(stan_data, 2, 10), design)
        assert len([col for col in draws.columns if col.startswith("r_subject[")]) == 8
        assert len([col for col in draws.columns if col.startswith("r_item[")]) == 3


# === TESTS: Engine operations ===


class TestCompileOnly:
    def test_artifact(self, engine, small_spec):
        artifact = engine.compile_only(small_spec)
        assert artifact.compile_key == small_spec.compile_key()
        assert artifact.exe_bytes == b"\x7fELF compiled model.stan"
        assert artifact.platform == sys.platform
        assert artifact.cmdstan_version == "2.36"
        assert artifact.stan_code.startswith("// log_rt ~ ")
        assert artifact.prior_fit is None

    def test_compiler_options(self, engine, small_spec):
        engine.compile_only(small_spec)
        (model,) = FakeModel.instances
        assert model.kwargs["stanc_options"] == {"warn-pedantic": False, "O1": True}
        assert model.kwargs["cpp_options"] == {"STAN_THREADS": True}

    def test_compile_error(self, engine, small_spec):
        FakeModel.compile_error = RuntimeError("stanc failed")
        with pytest.raises(CompileError, match="stanc failed"):
            engine.compile_only(small_spec)


class TestCompileAndFit:
    def test_fit(self, engine, small_spec, small_data):
        res = engine.compile_and_fit(small_spec, small_data)
        assert res.origin == "compile"
        assert res.n_obs == 48
        assert res.compile_key == small_spec.compile_key()
        assert res.n_chains == 2
        assert len(res.draws) == 100
        assert "b_conditionB" in res.param_names

    def test_sampler_arguments(self, engine, small_spec, small_data):
        engine.compile_and_fit(small_spec, small_data)
        kwargs = FakeModel.instances[0].sample_kwargs
        assert kwargs["chains"] == 2
        assert kwargs["parallel_chains"] == 2
        assert kwargs["iter_warmup"] == 50
        assert kwargs["iter_sampling"] == 50
        assert kwargs["seed"] == 1
        assert kwargs["refresh"] == 100
        assert kwargs["show_progress"] is True
        assert kwargs["data"]["prior_only"] == 0

    def test_config_overrides_spec(self, engine, small_spec, small_data):
        config = small_spec.sampler.replace(chains=3, iter=40, refresh=0)
        res = engine.compile_and_fit(small_spec, small_data, config)
        kwargs = FakeModel.instances[0].sample_kwargs
        assert kwargs["chains"] == 3
        assert kwargs["refresh"] is None
        assert kwargs["show_progress"] is False
        assert res.sampler == config

    def test_parallel_chains_are_capped(self, tmp_path, small_spec, small_data):
        engine = CmdStanEngine(RuntimeSettings(cores=1, fits_dir=str(tmp_path)))
        engine.compile_and_fit(small_spec, small_data)
        assert FakeModel.instances[0].sample_kwargs["parallel_chains"] == 1

    def test_seed_is_drawn_when_missing(self, engine, small_spec, small_data):
        spec = small_spec.with_sampler(seed=None)
        fitcache.manual_seed(7)
        first = engine.compile_and_fit(spec, small_data)
        fitcache.manual_seed(7)
        second = engine.compile_and_fit(spec, small_data)
        assert isinstance(first.sampler.seed, int)
        assert first.sampler.seed == second.sampler.seed

    def test_unsuitable_data(self, engine, small_spec, small_data):
        with pytest.raises(CompileError, match="Missing variables"):
            engine.compile_and_fit(small_spec, small_data.drop(columns="subject"))
        assert FakeModel.instances == []

    def test_sampler_failure(self, engine, small_spec, small_data):
        FakeModel.sample_error = RuntimeError("chain 1 failed")
        with pytest.raises(FitError, match="chain 1 failed"):
            engine.compile_and_fit(small_spec, small_data)

    def test_failed_diagnostics_warn(self, engine, small_spec, small_data):
        FakeModel.n_divergent = 5
        with pytest.warns(UserWarning, match="samples diverged"):
            res = engine.compile_and_fit(small_spec, small_data)
        assert res.diagnostics.n_divergent == 5

    def test_strict_diagnostics(self, tmp_path, small_spec, small_data):
        engine = CmdStanEngine(
            RuntimeSettings(cores=2, fits_dir=str(tmp_path)), strict_diagnostics=True
        )
        FakeModel.n_divergent = 5
        with pytest.raises(FitError) as excinfo:
            engine.compile_and_fit(small_spec, small_data)
        assert excinfo.value.diagnostics.n_divergent == 5


class TestBindAndFit:
    @pytest.fixture
    def artifact(self, engine, small_spec):
        artifact = engine.compile_only(small_spec)
        FakeModel.instances.clear()
        return artifact

    def test_fit(self, engine, artifact, small_data):
        res = engine.bind_and_fit(artifact, small_data)
        assert res.origin == "bind"
        assert res.n_obs == 48
        (model,) = FakeModel.instances
        assert model.stan_file is None
        assert os.path.basename(model.exe_file) == "model"

    def test_prior_only(self, engine, artifact, small_data):
        config = artifact.spec.sampler.replace(sample_prior="only", chains=4)
        res = engine.bind_and_fit(artifact, small_data, config)
        assert res.prior_only is True
        assert res.n_chains == 4
        assert FakeModel.instances[0].sample_kwargs["data"]["prior_only"] == 1

    def test_prior_only_skips_diagnostics(self, engine, artifact, small_data, recwarn):
        FakeModel.n_divergent = 5
        config = artifact.spec.sampler.replace(sample_prior="only")
        engine.bind_and_fit(artifact, small_data, config)
        assert not [w for w in recwarn if "diverged" in str(w.message)]

    def test_prior_only_needs_proper_priors(self, engine, small_data):
        spec = ModelSpec("log_rt ~ condition + (1 | subject)", "gaussian")
        artifact = engine.compile_only(spec)
        config = spec.sampler.replace(sample_prior="only")
        with pytest.raises(FitError, match="flat priors on b"):
            engine.bind_and_fit(artifact, small_data, config)

    def test_other_platform(self, engine, artifact, small_data):
        foreign = dataclasses.replace(artifact, platform="plan9")
        with pytest.raises(BindError, match="plan9"):
            engine.bind_and_fit(foreign, small_data)

    def test_unsuitable_data(self, engine, artifact, small_data):
        with pytest.raises(BindError, match="Missing variables"):
            engine.bind_and_fit(artifact, small_data.drop(columns="item"))

    def test_unloadable_executable(self, engine, artifact, small_data, monkeypatch):
        def broken_model(**kwargs):
            raise ValueError("not an executable")

        monkeypatch.setattr(cmdstan_engine, "CmdStanModel", broken_model)
        with pytest.raises(BindError, match="not an executable"):
            engine.bind_and_fit(artifact, small_data)

    def test_temporary_files_are_removed(self, engine, artifact, small_data):
        engine.bind_and_fit(artifact, small_data)
        assert not os.path.exists(FakeModel.instances[0].exe_file)
