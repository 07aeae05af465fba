# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

"""Provide a str enum class."""

from enum import Enum


class StrEnum(str, Enum):
    """Enum whose members are also (and behave as) strings."""

    def __str__(self) -> str:
        return str(self.value)

    @classmethod
    def to_list(cls):
        """Return the list of member values."""
        return [member.value for member in cls]
