"""Tests for model/design.py: binding datasets to formulas."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from fitcache.model.design import build_stan_data
from fitcache.model.spec import ModelSpec


class TestBuildStanData:
    def test_sizes(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        assert stan_data["N"] == 48
        assert stan_data["K"] == 1
        assert stan_data["X"].shape == (48, 1)
        assert (stan_data["N_1"], stan_data["M_1"]) == (4, 2)
        assert (stan_data["N_2"], stan_data["M_2"]) == (3, 1)
        assert stan_data["Z_1"].shape == (48, 2)
        assert stan_data["prior_only"] == 0
        assert design.n_obs == 48

    def test_treatment_coding(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        assert design.coef_names == ("conditionB",)
        np.testing.assert_array_equal(
            stan_data["X"][:, 0], (small_data["condition"] == "B").to_numpy(dtype=float)
        )

    def test_group_coding(self, small_spec, small_data):
        stan_data, design = build_stan_data(small_spec, small_data)
        subject, item = design.groups
        assert subject.group == "subject"
        assert subject.coef_names == ("Intercept", "conditionB")
        assert subject.levels == ("1", "2", "3", "4")
        assert item.coef_names == ("Intercept",)
        subjects = small_data["subject"].to_numpy()
        np.testing.assert_array_equal(stan_data["J_1"], subjects)
        assert stan_data["J_2"].dtype == np.int64
        np.testing.assert_array_equal(stan_data["Z_1"][:, 0], np.ones(48))

    def test_prior_only_flag(self, small_spec, small_data):
        stan_data, _ = build_stan_data(small_spec, small_data, prior_only=True)
        assert stan_data["prior_only"] == 1

    def test_string_levels_are_sorted(self, small_spec, small_data):
        data = small_data.assign(subject=small_data["subject"].map("s{}".format))
        data["subject"] = data["subject"].replace({"s1": "zed"})
        _, design = build_stan_data(small_spec, data)
        assert design.groups[0].levels == ("s2", "s3", "s4", "zed")

    def test_categorical_order_is_kept(self, small_spec, small_data):
        data = small_data.assign(
            condition=pd.Categorical(small_data["condition"], categories=["B", "A"])
        )
        _, design = build_stan_data(small_spec, data)
        assert design.coef_names == ("conditionA",)

    def test_interaction_columns(self, small_data):
        spec = ModelSpec("log_rt ~ x * condition", "gaussian")
        data = small_data.assign(x=np.linspace(-1, 1, len(small_data)))
        stan_data, design = build_stan_data(spec, data)
        assert design.coef_names == ("x", "conditionB", "x:conditionB")
        np.testing.assert_allclose(
            stan_data["X"][:, 2], stan_data["X"][:, 0] * stan_data["X"][:, 1]
        )

    def test_intercept_only_model(self, small_data):
        spec = ModelSpec("log_rt ~ 1 + (1 | subject)", "gaussian")
        stan_data, design = build_stan_data(spec, small_data)
        assert "X" not in stan_data
        assert "K" not in stan_data
        assert design.coef_names == ()

    def test_rows_with_missing_values_are_dropped(self, small_spec, small_data):
        data = small_data.copy()
        data.loc[[0, 5], "log_rt"] = np.nan
        with pytest.warns(UserWarning, match="Dropped 2 rows"):
            stan_data, design = build_stan_data(small_spec, data)
        assert stan_data["N"] == 46
        assert design.n_obs == 46

    def test_unreferenced_missing_values_are_ignored(self, small_spec, small_data):
        data = small_data.assign(note=np.nan)
        stan_data, _ = build_stan_data(small_spec, data)
        assert stan_data["N"] == 48


class TestBuildStanDataErrors:
    def test_missing_variable(self, small_spec, small_data):
        with pytest.raises(ValueError, match="Missing variables in data: item"):
            build_stan_data(small_spec, small_data.drop(columns="item"))

    def test_no_complete_rows(self, small_spec, small_data):
        data = small_data.assign(log_rt=np.nan)
        with pytest.warns(UserWarning):
            with pytest.raises(ValueError, match="No complete observations"):
                build_stan_data(small_spec, data)

    def test_constant_factor(self, small_spec, small_data):
        with pytest.raises(ValueError, match="no variation"):
            build_stan_data(small_spec, small_data.assign(condition="A"))

    def test_non_numeric_outcome(self, small_spec, small_data):
        with pytest.raises(ValueError, match="must be numeric"):
            build_stan_data(small_spec, small_data.assign(log_rt="slow"))

    def test_binary_outcome(self, small_data):
        spec = ModelSpec("correct ~ condition + (1 | subject)", "bernoulli")
        data = small_data.assign(correct=np.tile([0, 1, 1], 16))
        stan_data, _ = build_stan_data(spec, data)
        assert stan_data["Y"].dtype == np.int64

        with pytest.raises(ValueError, match="0 and 1"):
            build_stan_data(spec, data.assign(correct=2))

    def test_count_outcome(self, small_data):
        spec = ModelSpec("n ~ condition", "poisson")
        with pytest.raises(ValueError, match="non-negative integers"):
            build_stan_data(spec, small_data.assign(n=0.5))

    def test_positive_outcome(self, small_data):
        spec = ModelSpec("log_rt ~ condition", "lognormal")
        with pytest.raises(ValueError, match="strictly positive"):
            build_stan_data(spec, small_data.assign(log_rt=-1.0))
