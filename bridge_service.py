#!/usr/bin/env python3
"""
Shim module delegating to snowbridge.bridge_service.
This file exists for local runs from a source checkout.
"""

from snowbridge.bridge_service import create_app, main  # noqa: F401


if __name__ == '__main__':
    main()
