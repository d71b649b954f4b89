# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Configuration models and loaders."""

from codeloom.config.concurrency import ConcurrencySettings
from codeloom.config.settings import CodeLoomSettings, get_settings, load_settings


__all__ = ("CodeLoomSettings", "ConcurrencySettings", "get_settings", "load_settings")
