# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Shared infrastructure: configuration, exceptions, logging, database access."""
