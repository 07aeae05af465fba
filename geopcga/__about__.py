# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2024-2026 Antoine COLLET

__version__ = "0.1.0"
__author__ = "Antoine COLLET"
__email__ = ""
