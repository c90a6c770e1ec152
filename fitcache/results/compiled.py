# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Compiled model artifacts.

A :py:class:`CompiledArtifact` carries everything needed to sample from a model
without compiling it again: the generated Stan program, the bytes of the compiled
executable, and the platform and CmdStan version it was built for. It is created
once per compile-equivalent model specification and never mutated afterwards.
"""

from __future__ import annotations

import dataclasses
import os
import stat

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from fitcache.defaults import DEFAULT_MODEL_NAME

if TYPE_CHECKING:
    from fitcache.model.spec import ModelSpec
    from fitcache.results.hmc import FitResult


@dataclass(frozen=True)
class CompiledArtifact:
    """A compiled model, reusable with any dataset the model accepts.

    :param spec: Specification the artifact was compiled from
    :type spec: ModelSpec
    :param compile_key: Compile key of `spec`
    :type compile_key: str
    :param stan_code: Generated Stan program
    :type stan_code: str
    :param exe_bytes: Compiled executable
    :type exe_bytes: bytes
    :param platform: Platform the executable was built on (``sys.platform``)
    :type platform: str
    :param cmdstan_version: Version of CmdStan used for the build
    :type cmdstan_version: Optional[str]
    :param prior_fit: Draws from the prior, when prior predictive checks were run
    :type prior_fit: Optional[FitResult]
    """

    spec: "ModelSpec"
    compile_key: str
    stan_code: str
    exe_bytes: bytes
    platform: str
    cmdstan_version: Optional[str] = None
    prior_fit: Optional["FitResult"] = None

    def with_prior_fit(self, prior_fit: "FitResult") -> "CompiledArtifact":
        """Get a copy carrying draws from the prior."""
        return dataclasses.replace(self, prior_fit=prior_fit)

    def materialize(
        self, directory: str | os.PathLike, model_name: str = DEFAULT_MODEL_NAME
    ) -> tuple[str, str]:
        """Write the Stan program and an executable copy of the binary.

        :param directory: Existing directory to write into
        :type directory: str | os.PathLike
        :param model_name: File stem of the written files. Defaults to "model".
        :type model_name: str

        :returns: Paths of the Stan program and the executable
        :rtype: tuple[str, str]
        """
        stan_file = os.path.join(directory, f"{model_name}.stan")
        exe_file = os.path.join(
            directory, f"{model_name}.exe" if self.platform == "win32" else model_name
        )

        with open(stan_file, "w", encoding="utf-8") as f:
            f.write(self.stan_code)
        with open(exe_file, "wb") as f:
            f.write(self.exe_bytes)

        # Make the binary executable
        mode = os.stat(exe_file).st_mode
        os.chmod(exe_file, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        return stan_file, exe_file
