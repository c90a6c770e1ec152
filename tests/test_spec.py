"""Tests for model/spec.py: priors, sampler settings and compile keys."""

from __future__ import annotations

import dataclasses

import pytest

from fitcache.model.spec import ModelSpec, Prior, SamplerConfig


FORMULA = "log_rt ~ condition + (1 + condition | subject) + (1 | item)"


class TestPrior:
    def test_distribution_is_normalized(self):
        prior = Prior("normal( 6 , 1.5 )", "Intercept")
        assert prior.distribution == "normal(6.0, 1.5)"
        assert prior.name == "normal"
        assert prior.args == (6.0, 1.5)

    def test_equal_after_normalization(self):
        assert Prior("normal(0, 1)", "b") == Prior("normal(0.0, 1.00)", "b")

    def test_str(self):
        assert str(Prior("exponential(1)", "sd", group="item")) == (
            "prior(exponential(1.0), class = sd, group = item)"
        )

    def test_stan_statement(self):
        prior = Prior("normal(0, 0.5)", "b")
        assert prior.stan_statement("b") == "target += normal_lpdf(b | 0.0, 0.5);"

    def test_lkj_statement_uses_cholesky_factor(self):
        prior = Prior("lkj(2)", "cor")
        assert prior.stan_statement("L_1") == (
            "target += lkj_corr_cholesky_lpdf(L_1 | 2.0);"
        )

    @pytest.mark.parametrize(
        "distribution, class_, group",
        [
            ("normal(0, 1)", "beta", None),
            ("normal(0, 1)", "b", "subject"),
            ("normal 0 1", "b", None),
            ("uniform(0, 1)", "b", None),
            ("normal(0)", "b", None),
            ("student_t(3, 0)", "sigma", None),
            ("normal(0, a)", "b", None),
            ("lkj(2)", "b", None),
            ("normal(0, 1)", "cor", None),
        ],
    )
    def test_invalid(self, distribution, class_, group):
        with pytest.raises(ValueError):
            Prior(distribution, class_, group=group)

    def test_group_allowed_for_sd(self):
        assert Prior("exponential(1)", "sd", group="subject").group == "subject"


class TestSamplerConfig:
    def test_defaults(self):
        config = SamplerConfig()
        assert config.chains == 4
        assert config.iter == 2000
        assert config.n_warmup == 1000
        assert config.n_sampling == 1000
        assert config.prior_only is False

    def test_explicit_warmup(self):
        config = SamplerConfig(iter=1000, warmup=200)
        assert config.n_warmup == 200
        assert config.n_sampling == 800

    def test_prior_only(self):
        assert SamplerConfig(sample_prior="only").prior_only is True

    def test_replace(self):
        config = SamplerConfig(chains=2, iter=1000, cores=2, refresh=100)
        replaced = config.replace(chains=4, cores=4, refresh=0)
        assert (replaced.chains, replaced.cores, replaced.refresh) == (4, 4, 0)
        assert replaced.iter == 1000
        assert config.chains == 2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chains": 0},
            {"iter": 0},
            {"cores": 0},
            {"thin": 0},
            {"max_treedepth": 0},
            {"iter": 100, "warmup": 100},
            {"warmup": -1},
            {"refresh": -1},
            {"adapt_delta": 1.0},
            {"sample_prior": "yes"},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SamplerConfig(**kwargs)


class TestModelSpec:
    def test_strings_are_parsed(self, small_spec):
        assert small_spec.formula.outcome == "log_rt"
        assert small_spec.family.name == "gaussian"
        assert isinstance(small_spec.priors, tuple)

    def test_parameter_slots(self, small_spec):
        assert small_spec.parameter_slots() == (
            ("Intercept", None),
            ("b", None),
            ("sigma", None),
            ("sd", "subject"),
            ("sd", "item"),
            ("cor", "subject"),
        )

    def test_parameter_slots_without_sigma(self):
        spec = ModelSpec("y ~ x + (1 | g)", "bernoulli")
        assert spec.parameter_slots() == (("Intercept", None), ("b", None), ("sd", "g"))

    def test_prior_for_prefers_group_specific(self):
        spec = ModelSpec(
            FORMULA,
            "gaussian",
            priors=(
                Prior("exponential(1)", "sd"),
                Prior("exponential(2)", "sd", group="item"),
            ),
        )
        assert spec.prior_for("sd", "item").distribution == "exponential(2.0)"
        assert spec.prior_for("sd", "subject").distribution == "exponential(1.0)"

    def test_prior_for_falls_back_to_defaults(self):
        spec = ModelSpec(FORMULA, "gaussian")
        assert spec.prior_for("Intercept").distribution == "student_t(3.0, 0.0, 2.5)"
        assert spec.prior_for("cor", "subject").distribution == "lkj(1.0)"
        assert spec.prior_for("b") is None

    def test_improper_classes(self):
        assert ModelSpec(FORMULA, "gaussian").improper_classes() == ("b",)

    def test_no_improper_classes_with_full_priors(self, small_spec):
        assert small_spec.improper_classes() == ()

    def test_duplicate_prior(self):
        with pytest.raises(ValueError, match="Duplicate"):
            ModelSpec(
                FORMULA,
                "gaussian",
                priors=(Prior("normal(0, 1)", "b"), Prior("normal(0, 2)", "b")),
            )

    @pytest.mark.parametrize(
        "prior",
        [
            Prior("exponential(1)", "sigma"),
            Prior("exponential(1)", "sd", group="block"),
            Prior("lkj(2)", "cor", group="item"),
        ],
    )
    def test_prior_for_missing_parameter(self, prior):
        with pytest.raises(ValueError, match="not in the model"):
            ModelSpec(FORMULA, "bernoulli", priors=(prior,))

    def test_prior_on_b_needs_terms(self):
        with pytest.raises(ValueError):
            ModelSpec(
                "y ~ 1 + (1 | g)", "gaussian", priors=(Prior("normal(0, 1)", "b"),)
            )


class TestCompileKey:
    def test_sampler_settings_do_not_matter(self, small_spec, small_prior_spec):
        assert small_spec.sampler != small_prior_spec.sampler
        assert small_spec.compile_key() == small_prior_spec.compile_key()
        assert small_spec.compile_equivalent(small_prior_spec)

    def test_priors_matter(self, small_spec, other_spec):
        assert not small_spec.compile_equivalent(other_spec)

    def test_family_matters(self):
        first = ModelSpec("y ~ x + (1 | g)", "gaussian")
        second = ModelSpec("y ~ x + (1 | g)", "lognormal")
        assert first.compile_key() != second.compile_key()

    def test_grouping_structure_matters(self):
        first = ModelSpec("y ~ x + (1 + x | g)", "gaussian")
        second = ModelSpec("y ~ x + (1 + x || g)", "gaussian")
        assert first.compile_key() != second.compile_key()

    def test_explicit_default_prior_is_equivalent(self):
        implicit = ModelSpec(FORMULA, "gaussian")
        explicit = ModelSpec(
            FORMULA, "gaussian", priors=(Prior("student_t(3, 0, 2.5)", "Intercept"),)
        )
        assert implicit.compile_key() == explicit.compile_key()

    def test_prior_order_does_not_matter(self, small_spec):
        reordered = dataclasses.replace(small_spec, priors=small_spec.priors[::-1])
        assert reordered.compile_key() == small_spec.compile_key()

    def test_formula_spelling_does_not_matter(self):
        first = ModelSpec("y ~ x + (1 + x | g)", "gaussian")
        second = ModelSpec("y ~ 1 + x + (x | g)", "Gaussian")
        assert first.compile_key() == second.compile_key()

    def test_key_is_stable(self, small_spec):
        assert len(small_spec.compile_key()) == 64
        assert small_spec.compile_key() == small_spec.compile_key()

    def test_with_sampler(self, small_spec):
        prior_spec = small_spec.with_sampler(sample_prior="only", chains=4)
        assert prior_spec.sampler.prior_only is True
        assert prior_spec.sampler.chains == 4
        assert prior_spec.formula == small_spec.formula
        assert prior_spec.compile_equivalent(small_spec)
