# -*- coding: utf-8 -*-
"""Location: ./accessforge/services/__init__.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Decision, compilation, filtering and management services.
"""
