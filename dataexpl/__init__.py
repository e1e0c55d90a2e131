# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Data explorer: browse content stored with storage providers.

Retrieves just enough of a DAG to answer a request (a directory listing,
a file, a structured node) and serves it over HTTP or the command line.
"""

__version__ = "0.1.0"
