# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Relay - reusable CI/CD workflow composition."""

__version__ = "0.3.0"
