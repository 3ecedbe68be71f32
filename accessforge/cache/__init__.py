# -*- coding: utf-8 -*-
"""Location: ./accessforge/cache/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Decision cache back-ends.
"""

from accessforge.cache.decision_cache import build_cache_backend, build_cache_key, MemoryDecisionCache, RedisDecisionCache

__all__ = ["build_cache_backend", "build_cache_key", "MemoryDecisionCache", "RedisDecisionCache"]
