# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Parsing of multilevel model formulas.

Formulas follow the lme4/brms conventions for the subset of features supported by
FitCache:

    - ``outcome ~ x + z``: population-level (fixed) effects
    - ``a:b``: interaction; ``a*b`` expands to ``a + b + a:b``
    - ``1`` / ``0`` / ``-1``: include or drop the intercept
    - ``(1 + x | g)``: group-level effects of ``x`` and an intercept varying over
      the levels of ``g``, with correlations between them
    - ``(1 + x || g)``: as above, but without correlations

A grouping factor may appear in only one group-level term. Parsing only checks the
structure of the formula. Whether the referenced variables exist is checked when
data is bound to the model.

Example:
    >>> formula = Formula.parse(
    ...     "log_rt ~ condition + (1 + condition | subject) + (1 | item)"
    ... )
    >>> formula.outcome
    'log_rt'
    >>> [g.group for g in formula.group_terms]
    ['subject', 'item']
"""

from __future__ import annotations

import re

from dataclasses import dataclass


# Names of variables that can be referenced in a formula
_VARNAME = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*$")

# Drop-the-intercept shorthand
_MINUS_ONE = re.compile(r"-\s*1(?![0-9.])")


def _split_top_level(text: str, sep: str = "+") -> list[str]:
    """Splits `text` on `sep`, ignoring separators within parentheses."""
    pieces, depth, current = [], 0, []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in '{text}'.")
        if char == sep and depth == 0:
            pieces.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in '{text}'.")
    pieces.append("".join(current).strip())

    # Empty pieces mean a dangling separator
    if any(piece == "" for piece in pieces):
        raise ValueError(f"Empty term in '{text}'.")
    return pieces


def _parse_terms(text: str) -> tuple[bool | None, tuple[str, ...]]:
    """Parses a `+`-separated list of population-level terms.

    :returns: Whether an intercept was explicitly requested (True), explicitly
        dropped (False), or left implicit (None), and the non-intercept terms in
        order of first appearance.
    """
    intercept = None
    terms: list[str] = []
    for piece in _split_top_level(_MINUS_ONE.sub("+ 0", text).strip().lstrip("+")):
        if piece == "1":
            intercept = True if intercept is None else intercept
            continue
        if piece == "0":
            intercept = False
            continue

        # Expand `a*b` to `a + b + a:b`
        if "*" in piece:
            factors = [factor.strip() for factor in piece.split("*")]
            expanded = factors + [":".join(factors)]
        else:
            expanded = [piece]

        # Normalize interactions and check variable names
        for term in expanded:
            parts = [part.strip() for part in term.split(":")]
            for part in parts:
                if not _VARNAME.match(part):
                    raise ValueError(f"Unsupported term '{piece}'.")
            term = ":".join(parts)
            if term not in terms:
                terms.append(term)

    return intercept, tuple(terms)


@dataclass(frozen=True)
class GroupTerm:
    """A group-level term such as ``(1 + condition | subject)``.

    :param group: Name of the grouping factor
    :type group: str
    :param terms: Non-intercept terms varying over the groups
    :type terms: tuple[str, ...]
    :param intercept: Whether the intercept varies over the groups
    :type intercept: bool
    :param correlated: Whether correlations between the varying effects are modeled
    :type correlated: bool
    """

    group: str
    terms: tuple[str, ...]
    intercept: bool = True
    correlated: bool = True

    def __str__(self) -> str:
        lhs = " + ".join(("1" if self.intercept else "0",) + self.terms)
        bar = "||" if not self.correlated and self.n_terms > 1 else "|"
        return f"({lhs} {bar} {self.group})"

    @property
    def n_terms(self) -> int:
        """Number of formula terms (intercept included) varying over the groups."""
        return len(self.terms) + int(self.intercept)

    @property
    def variables(self) -> set[str]:
        """Names of all variables referenced by this term."""
        return {self.group} | {part for term in self.terms for part in term.split(":")}

    @classmethod
    def parse(cls, text: str) -> "GroupTerm":
        """Parses the inside of a group-level term (without parentheses)."""
        # Uncorrelated terms must be checked first
        if "||" in text:
            lhs, group = text.split("||", 1)
            correlated = False
        elif "|" in text:
            lhs, group = text.split("|", 1)
            correlated = True
        else:
            raise ValueError(f"Group-level term '({text})' is missing '|'.")

        # Check the grouping factor
        group = group.strip()
        if not _VARNAME.match(group):
            raise ValueError(f"Unsupported grouping factor '{group}'.")

        # Parse the varying terms. The intercept is implicit, as at the population
        # level.
        intercept, terms = _parse_terms(lhs)
        intercept = True if intercept is None else intercept
        if not intercept and not terms:
            raise ValueError(f"Group-level term '({text})' has no varying effects.")

        # A single varying coefficient has nothing to correlate with
        return cls(
            group=group,
            terms=terms,
            intercept=intercept,
            correlated=correlated and len(terms) + int(intercept) > 1,
        )


@dataclass(frozen=True)
class Formula:
    """A parsed multilevel model formula.

    :param outcome: Name of the outcome variable
    :type outcome: str
    :param terms: Population-level terms (the intercept excluded)
    :type terms: tuple[str, ...]
    :param intercept: Whether the model has a population-level intercept
    :type intercept: bool
    :param group_terms: Group-level terms
    :type group_terms: tuple[GroupTerm, ...]
    """

    outcome: str
    terms: tuple[str, ...] = ()
    intercept: bool = True
    group_terms: tuple[GroupTerm, ...] = ()

    def __post_init__(self) -> None:
        # Each grouping factor can only be used once
        groups = [term.group for term in self.group_terms]
        if duplicates := {group for group in groups if groups.count(group) > 1}:
            raise ValueError(
                "Grouping factors may appear in only one group-level term: "
                f"{', '.join(sorted(duplicates))}"
            )

    def __str__(self) -> str:
        rhs = ["1" if self.intercept else "0"]
        rhs.extend(self.terms)
        rhs.extend(str(term) for term in self.group_terms)
        return f"{self.outcome} ~ {' + '.join(rhs)}"

    @classmethod
    def parse(cls, text: str) -> "Formula":
        """Parses a formula such as ``y ~ x + (1 + x | g)``.

        :param text: The formula
        :type text: str

        :returns: The parsed formula
        :rtype: Formula

        :raises ValueError: If the formula is malformed or uses unsupported syntax
        """
        # Split into outcome and predictors
        if text.count("~") != 1:
            raise ValueError(f"Formula must contain exactly one '~': '{text}'.")
        outcome, rhs = (side.strip() for side in text.split("~"))
        if not _VARNAME.match(outcome):
            raise ValueError(f"Unsupported outcome '{outcome}'.")
        if not rhs:
            raise ValueError(f"Formula has no right-hand side: '{text}'.")

        # Separate population- and group-level terms
        population, group_terms = [], []
        for piece in _split_top_level(rhs):
            if piece.startswith("(") and piece.endswith(")"):
                group_terms.append(GroupTerm.parse(piece[1:-1]))
            else:
                population.append(piece)

        # Parse population-level terms. The intercept is implicit.
        if population:
            intercept, terms = _parse_terms(" + ".join(population))
        else:
            intercept, terms = None, ()

        return cls(
            outcome=outcome,
            terms=terms,
            intercept=True if intercept is None else intercept,
            group_terms=tuple(group_terms),
        )

    @property
    def variables(self) -> set[str]:
        """Names of all variables referenced by the formula."""
        variables = {self.outcome}
        variables.update(part for term in self.terms for part in term.split(":"))
        for group_term in self.group_terms:
            variables.update(group_term.variables)
        return variables

    @property
    def groups(self) -> tuple[str, ...]:
        """Names of the grouping factors, in order of appearance."""
        return tuple(term.group for term in self.group_terms)

    @property
    def has_correlations(self) -> bool:
        """Whether any group-level term models correlations."""
        return any(term.correlated for term in self.group_terms)

    def group_term(self, group: str) -> GroupTerm:
        """Get the group-level term of a grouping factor.

        :raises KeyError: If the formula has no term for `group`
        """
        for term in self.group_terms:
            if term.group == group:
                return term
        raise KeyError(f"No group-level term for '{group}'.")

    def canonical(self) -> dict:
        """Get the formula as plain data for hashing."""
        return {
            "outcome": self.outcome,
            "intercept": self.intercept,
            "terms": list(self.terms),
            "group_terms": [
                {
                    "group": term.group,
                    "intercept": term.intercept,
                    "terms": list(term.terms),
                    "correlated": term.correlated,
                }
                for term in self.group_terms
            ],
        }
