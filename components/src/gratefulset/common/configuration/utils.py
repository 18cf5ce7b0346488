# SPDX-FileCopyrightText: Copyright (c) 2025-2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Helpers for CLI flags that fall back to GS_* environment variables."""

import os
from typing import Any, Callable, Optional, TypeVar, Union

T = TypeVar("T")

def env_or_default(
    env_var: str,
    default: T,
    value_type: Optional[Union[type, Callable[..., Any]]] = None,
) -> T:
    """
    Read `env_var` and coerce it, or return `default` when it is unset.

    Args:
        env_var: Environment variable name (e.g., "GS_WORKERS")
        default: Value used when the variable is unset or empty
        value_type: Conversion applied to the raw string. Defaults to
            type(default); when both are None the raw string is returned.

    Returns:
        The converted environment value, or `default`
    """
    raw = os.environ.get(env_var)
    if raw is None or raw == "":
        return default

    target_type = value_type if value_type is not None else type(default)
    if default is None and value_type is None:
        return raw  # type: ignore[return-value]

    return target_type(raw)  # type: ignore[return-value]


def add_argument(
    parser,
    *,
    flag_name: str,
    env_var: str,
    default: Any,
    help: str,
    arg_type: Optional[Union[type, Callable[..., Any]]] = str,
    **kwargs: Any,
) -> None:
    """
    Register `flag_name` on `parser` with its default taken from `env_var`.

    The help text is suffixed with the environment variable and the built-in
    default so `--help` documents both ways of configuring the controller.

    Args:
        parser: ArgumentParser or argument group
        flag_name: Flag, must start with '--'
        env_var: Environment variable consulted for the default
        default: Built-in default
        help: Help text
        arg_type: Conversion for both the flag and the environment value
    """
    if not flag_name.startswith("--"):
        raise ValueError(f"flag_name must start with '--': {flag_name}")

    env_type = arg_type if isinstance(arg_type, type) else None
    resolved_default = env_or_default(env_var, default, value_type=env_type)

    options: dict[str, Any] = {
        "dest": kwargs.pop("dest", None) or flag_name[2:].replace("-", "_"),
        "default": resolved_default,
        "help": f"{help}\nenv var: {env_var} | default: {default}",
    }
    if arg_type is not None:
        options["type"] = arg_type
    options.update(kwargs)

    parser.add_argument(flag_name, **options)

