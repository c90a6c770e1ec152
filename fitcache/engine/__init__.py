# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Modeling engines that compile and sample models for the staged fit pipeline.

:py:class:`~fitcache.engine.base.ModelingEngine` defines the boundary the pipeline
relies on. :py:class:`~fitcache.engine.cmdstan_engine.CmdStanEngine` implements it
with CmdStan.
"""

from fitcache.engine.base import ModelingEngine
from fitcache.engine.cmdstan_engine import CmdStanEngine
