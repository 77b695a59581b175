"""Sidecar Supervisor 入口点。

支持: python -m sidecar_supervisor
"""

from .app import main

if __name__ == "__main__":
    main()
