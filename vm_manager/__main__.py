"""Run vm-manager via ``python -m vm_manager``."""

from vm_manager.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
