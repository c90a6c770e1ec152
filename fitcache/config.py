# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Operator-level runtime settings.

The operator controls the degree of parallelism, the root of the artifact store,
and the location of the CmdStan installation through environment variables. These
are read once, when a pipeline is set up, and are treated as immutable for the rest
of the run.

Environment variables:
    - ``FITCACHE_CORES``: maximum number of chains run in parallel. Falls back to
      ``MC_CORES`` (the variable R uses for ``mc.cores``) and then to the number of
      CPUs.
    - ``FITCACHE_DIR``: root directory of the artifact store. Defaults to ``fits``.
    - ``CMDSTAN``: CmdStan installation. When unset, a few conventional install
      locations are searched before deferring to cmdstanpy's own lookup.

Example:
    >>> settings = RuntimeSettings.from_env()
    >>> settings.apply()  # Point cmdstanpy at the detected CmdStan installation
"""

from __future__ import annotations

import os

from dataclasses import dataclass
from typing import Mapping, Optional

import cmdstanpy

from fitcache.defaults import (
    CMDSTAN_CANDIDATE_PATHS,
    DEFAULT_FITS_DIR,
    ENV_CMDSTAN,
    ENV_CORES,
    ENV_FITS_DIR,
    ENV_R_CORES,
)


def _parse_cores(value: str, varname: str) -> int:
    """Parses a positive integer core count from an environment variable."""
    try:
        cores = int(value)
    except ValueError as e:
        raise ValueError(f"{varname} must be an integer, got '{value}'.") from e
    if cores < 1:
        raise ValueError(f"{varname} must be a positive integer, got {cores}.")
    return cores


def find_cmdstan(environ: Mapping[str, str]) -> Optional[str]:
    """Locate a CmdStan installation.

    :param environ: Environment to read ``CMDSTAN`` from
    :type environ: Mapping[str, str]

    :returns: Path of the installation, or None to defer to cmdstanpy's lookup
    :rtype: Optional[str]

    :raises ValueError: If ``CMDSTAN`` is set to a directory that does not exist
    """
    # An explicit setting wins and must be valid
    if explicit := environ.get(ENV_CMDSTAN):
        if not os.path.isdir(explicit):
            raise ValueError(f"{ENV_CMDSTAN} points to a missing directory: {explicit}")
        return explicit

    # Otherwise, check the conventional locations
    for candidate in CMDSTAN_CANDIDATE_PATHS:
        path = os.path.expanduser(candidate)
        if os.path.isdir(path):
            return path

    return None


@dataclass(frozen=True)
class RuntimeSettings:
    """Immutable operator settings for one run.

    :param cores: Maximum number of chains run in parallel
    :type cores: int
    :param fits_dir: Root directory of the artifact store
    :type fits_dir: str
    :param cmdstan_path: CmdStan installation, or None to use cmdstanpy's default
    :type cmdstan_path: Optional[str]
    """

    cores: int = 1
    fits_dir: str = DEFAULT_FITS_DIR
    cmdstan_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.cores < 1:
            raise ValueError(f"cores must be a positive integer, got {self.cores}.")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeSettings":
        """Read the settings from the environment.

        :param environ: Mapping to read from. Defaults to None (``os.environ``).
        :type environ: Optional[Mapping[str, str]]

        :returns: Settings for this run
        :rtype: RuntimeSettings

        :raises ValueError: If a variable is set to an invalid value
        """
        environ = os.environ if environ is None else environ

        # Parallelism degree
        if value := environ.get(ENV_CORES):
            cores = _parse_cores(value, ENV_CORES)
        elif value := environ.get(ENV_R_CORES):
            cores = _parse_cores(value, ENV_R_CORES)
        else:
            cores = os.cpu_count() or 1

        return cls(
            cores=cores,
            fits_dir=environ.get(ENV_FITS_DIR) or DEFAULT_FITS_DIR,
            cmdstan_path=find_cmdstan(environ),
        )

    def apply(self) -> None:
        """Point cmdstanpy at the configured CmdStan installation, if any."""
        if self.cmdstan_path is not None:
            cmdstanpy.set_cmdstan_path(self.cmdstan_path)
