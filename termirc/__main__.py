"""Main entry point.

Typically invoked as "python3 -m termirc" or "/usr/bin/termirc".
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from . import run

run()
