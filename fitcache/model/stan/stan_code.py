# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Stan code generation for model specifications.

The generated program depends only on the compile-relevant fields of a
:py:class:`~fitcache.model.spec.ModelSpec` (formula structure, family, and
priors). Everything that depends on the dataset, including the number of
observations, coefficients, and group levels, is passed in as data. A
``prior_only`` data flag switches the likelihood off, so one executable serves
both prior and posterior sampling.

Group-level terms are indexed by their position in the formula (``sd_1``,
``z_1``, ``L_1``, ...) so that grouping factor names never need to be valid Stan
identifiers. Group-level effects use the non-centered parameterization:

    r_i = transpose(diag_pre_multiply(sd_i, L_i) * z_i)

with ``z_i`` standard normal and ``L_i`` the Cholesky factor of the correlation
matrix (omitted for uncorrelated terms).
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

from fitcache.defaults import DEFAULT_INDENTATION

if TYPE_CHECKING:
    from fitcache.model.spec import ModelSpec


class StanProgram:
    """Assembles the Stan program of a model specification.

    :param spec: Model specification to translate
    :type spec: ModelSpec

    Example:
        >>> program = StanProgram(spec)
        >>> print(program.code)
    """

    def __init__(self, spec: "ModelSpec"):
        self.spec = spec
        self.formula = spec.formula
        self.family = spec.family

    @staticmethod
    def finalize_line(text: str, indentation_level: int = 1) -> str:
        """Indent a line of Stan code and terminate statements with a semicolon.

        :param text: Raw code text
        :type text: str
        :param indentation_level: Indentation level. Defaults to 1.
        :type indentation_level: int

        :returns: Formatted line
        :rtype: str
        """
        formatted = f"{' ' * DEFAULT_INDENTATION * indentation_level}{text}"
        if text and text[-1] not in {"{", "}", ";"} and not text.startswith("//"):
            formatted += ";"
        return formatted

    def combine_lines(self, lines: list[str], indentation_level: int = 1) -> str:
        """Format and join lines of Stan code."""
        return "\n".join(
            self.finalize_line(line, indentation_level=indentation_level)
            for line in lines
        )

    def _block(self, name: str, lines: list[str]) -> str:
        """Wraps lines in a named program block. Empty blocks are omitted."""
        if len(lines) == 0:
            return ""
        return f"{name} {{\n" + self.combine_lines(lines) + "\n}"

    def _group_indices(self) -> list[tuple[int, bool]]:
        """Index and correlation flag of each group-level term."""
        return [
            (i, term.correlated) for i, term in enumerate(self.formula.group_terms, 1)
        ]

    @property
    def data_block(self) -> str:
        """Declarations of the observations, design matrices and group indices."""
        # Outcome
        lines = ["int<lower=1> N"]
        if self.family.outcome_type == "binary":
            lines.append("array[N] int<lower=0, upper=1> Y")
        elif self.family.outcome_type == "count":
            lines.append("array[N] int<lower=0> Y")
        elif self.family.outcome_type == "positive":
            lines.append("vector<lower=0>[N] Y")
        else:
            lines.append("vector[N] Y")

        # Population-level design matrix
        if self.formula.terms:
            lines.extend(["int<lower=1> K", "matrix[N, K] X"])

        # Group-level design matrices and indices
        for i, _ in self._group_indices():
            lines.extend(
                [
                    f"int<lower=1> N_{i}",
                    f"int<lower=1> M_{i}",
                    f"array[N] int<lower=1, upper=N_{i}> J_{i}",
                    f"matrix[N, M_{i}] Z_{i}",
                ]
            )

        lines.append("int<lower=0, upper=1> prior_only")
        return self._block("data", lines)

    @property
    def parameters_block(self) -> str:
        """Declarations of the sampled parameters."""
        lines = []
        if self.formula.intercept:
            lines.append("real Intercept")
        if self.formula.terms:
            lines.append("vector[K] b")
        if self.family.has_sigma:
            lines.append("real<lower=0> sigma")
        for i, correlated in self._group_indices():
            lines.append(f"vector<lower=0>[M_{i}] sd_{i}")
            lines.append(f"matrix[M_{i}, N_{i}] z_{i}")
            if correlated:
                lines.append(f"cholesky_factor_corr[M_{i}] L_{i}")
        return self._block("parameters", lines)

    @property
    def transformed_parameters_block(self) -> str:
        """Scaled (and correlated) group-level effects."""
        lines = []
        for i, correlated in self._group_indices():
            scaled = (
                f"diag_pre_multiply(sd_{i}, L_{i}) * z_{i}"
                if correlated
                else f"diag_pre_multiply(sd_{i}, z_{i})"
            )
            lines.append(f"matrix[N_{i}, M_{i}] r_{i} = transpose({scaled})")
        return self._block("transformed parameters", lines)

    def _prior_lines(self) -> list[str]:
        """Target increments for the priors in effect."""
        targets = {
            "Intercept": "Intercept",
            "b": "b",
            "sigma": "sigma",
            "sd": "sd_{i}",
            "cor": "L_{i}",
        }
        group_index = {group: i for i, group in enumerate(self.formula.groups, 1)}

        lines = []
        for class_, group in self.spec.parameter_slots():
            if (prior := self.spec.prior_for(class_, group)) is None:
                continue
            target = targets[class_].format(i=group_index.get(group))
            lines.append(prior.stan_statement(target))
        return lines

    @property
    def model_block(self) -> str:
        """Likelihood (skipped when ``prior_only``) and priors."""
        # Linear predictor
        intercept = "Intercept" if self.formula.intercept else "0.0"
        likelihood = [f"vector[N] mu = rep_vector({intercept}, N)"]
        if self.formula.terms:
            likelihood.append("mu += X * b")
        if self.formula.group_terms:
            likelihood.append("for (n in 1:N) {")
            likelihood.extend(
                self.finalize_line(
                    f"mu[n] += dot_product(Z_{i}[n], r_{i}[J_{i}[n]])", 1
                )
                for i, _ in self._group_indices()
            )
            likelihood.append("}")
        likelihood.append(
            f"target += {self.family.likelihood.format(mu='mu')}"
        )

        # Wrap the likelihood in the prior_only switch
        lines = ["if (!prior_only) {"]
        lines.extend(self.finalize_line(line, 1) for line in likelihood)
        lines.append("}")

        # Priors
        lines.extend(self._prior_lines())
        lines.extend(
            f"target += std_normal_lpdf(to_vector(z_{i}))"
            for i, _ in self._group_indices()
        )

        return self._block("model", lines)

    @property
    def generated_quantities_block(self) -> str:
        """Correlation matrices of the correlated group-level terms."""
        lines = [
            f"matrix[M_{i}, M_{i}] Cor_{i} = multiply_lower_tri_self_transpose(L_{i})"
            for i, correlated in self._group_indices()
            if correlated
        ]
        return self._block("generated quantities", lines)

    @property
    def code(self) -> str:
        """The complete Stan program."""
        # Join blocks that have contents
        return (
            "\n".join(
                block
                for block in (
                    self.data_block,
                    self.parameters_block,
                    self.transformed_parameters_block,
                    self.model_block,
                    self.generated_quantities_block,
                )
                if len(block.strip()) > 0
            )
            + "\n"
        )


def generate_stan_code(spec: "ModelSpec", header: Optional[str] = None) -> str:
    """Generate the Stan program of a model specification.

    :param spec: Model specification
    :type spec: ModelSpec
    :param header: Comment placed at the top of the program. Defaults to None (the
        formula and family).
    :type header: Optional[str]

    :returns: Stan program
    :rtype: str
    """
    header = f"{spec.formula} [{spec.family}]" if header is None else header
    return f"// {header}\n" + StanProgram(spec).code
