#!/usr/bin/env python
"""
Quick start script for the CTO Orchestrator service.

This script performs pre-flight checks (dependencies, delegation tables) and
starts the service.
"""

import sys
from pathlib import Path


def main() -> None:
    """Main entry point."""
    print("=" * 50)
    print("CTO Orchestrator Quick Start")
    print("=" * 50)
    print()

    # Get project root
    script_dir = Path(__file__).parent
    project_root = script_dir.parent
    sys.path.insert(0, str(project_root))

    env_file = project_root / ".env"
    if not env_file.exists():
        print("⚠️  .env file not found, using defaults.")
        print("   Set SUBAGENT_MANAGER_URL to point at the worker service.")
        print()

    # Check dependencies
    print("Checking dependencies...")
    try:
        import anyio  # noqa: F401
        import fastapi  # noqa: F401
        import httpx  # noqa: F401
        import pydantic  # noqa: F401
        import yaml  # noqa: F401
        print("✓ Core dependencies installed")
    except ImportError as e:
        print(f"❌ Missing dependency: {e}")
        print("\nInstall dependencies with:")
        print("  pip install -e .")
        sys.exit(1)

    # Check Python version
    version_info = sys.version_info
    if version_info < (3, 11):
        print(f"⚠️  Python {version_info.major}.{version_info.minor} detected.")
        print("   Python 3.11+ is recommended.")
    else:
        print(f"✓ Python {version_info.major}.{version_info.minor}")

    # Validate delegation tables before binding the port
    print("\nValidating delegation tables...")
    from cto_orchestrator.service.errors import RegistryConfigError
    from cto_orchestrator.service.registry import get_delegation_config

    try:
        delegation = get_delegation_config()
    except RegistryConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)
    print(
        f"✓ {len(delegation.workers)} workers, {len(delegation.stages)} stages, "
        f"{len(delegation.triggers)} trigger groups"
    )

    print("\n" + "=" * 50)
    print("Starting CTO Orchestrator Service")
    print("=" * 50)
    print()
    print("Service will be available at: http://localhost:8000")
    print("API documentation at: http://localhost:8000/docs")
    print()
    print("Press Ctrl+C to stop the service")
    print()

    try:
        from cto_orchestrator.service.main import main as service_main

        service_main()

    except KeyboardInterrupt:
        print("\n\nService stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
