# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Common package providing shared time and randomness helpers for authpipe.
"""

from .utils import (
    get_current_time,
    to_timestamp,
    from_timestamp,
    resolve_now,
    generate_secure_token,
    constant_time_equals,
)

__all__ = [
    'get_current_time',
    'to_timestamp',
    'from_timestamp',
    'resolve_now',
    'generate_secure_token',
    'constant_time_equals',
]
