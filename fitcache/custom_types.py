# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Custom type definitions for FitCache.

All imports are conditional on TYPE_CHECKING to avoid circular imports while
maintaining proper type hints for development and documentation tools.
"""

from typing import Any, Literal, TYPE_CHECKING, Union

# Everything in this file is only imported if TYPE_CHECKING is True.
if TYPE_CHECKING:

    import numpy as np
    import numpy.typing as npt

# Scalar types
Integer = Union[int, "np.integer"]
"""Type alias for integer values.

Accepts both Python's built-in int and NumPy integer types.

:type: Union[int, np.integer]
"""

# Data types
StanData = dict[str, Union[int, float, "npt.NDArray"]]
"""Type alias for the data dictionary passed to a compiled Stan program.

:type: dict[str, Union[int, float, npt.NDArray]]
"""

# Policy types
StalePolicy = Literal["raise", "refit", "ignore"]
"""What to do when a cached result is not compile-equivalent to the request.

:type: Literal["raise", "refit", "ignore"]
"""

BindFailurePolicy = Literal["raise", "recompile"]
"""What to do when reusing a compiled artifact fails.

:type: Literal["raise", "recompile"]
"""

ParameterClass = Literal["Intercept", "b", "sigma", "sd", "cor"]
"""Parameter classes to which priors can be assigned.

:type: Literal["Intercept", "b", "sigma", "sd", "cor"]
"""

JSONLike = Any
"""Plain data (dicts, lists, strings, numbers) serializable as canonical JSON.

:type: Any
"""
