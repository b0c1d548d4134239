# Main Entry Point - run the local vault API server
#
#   python -m blackvault [--host 127.0.0.1] [--port 8000] [--vault-path PATH]

import argparse
import os
import sys

from . import __version__
from .core import EventSeverity, EventType, log_security_event


def main():
    parser = argparse.ArgumentParser(
        description="BlackVault - local encrypted credential vault (API server)",
    )

    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="API host (default: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="API port (default: 8000)"
    )

    parser.add_argument(
        "--vault-path",
        default=None,
        help="Vault database file (default: $BLACKVAULT_VAULT_PATH or data/vault.db)"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"BlackVault v{__version__}"
    )

    args = parser.parse_args()

    if args.vault_path:
        # Picked up by load_config() when the vault manager is created
        os.environ["BLACKVAULT_VAULT_PATH"] = args.vault_path

    print(f"  Starting BlackVault API on {args.host}:{args.port}...")
    print("  Press Ctrl+C to stop")

    from .api.main import start_api_server

    try:
        start_api_server(host=args.host, port=args.port)
    except KeyboardInterrupt:
        print("\n\nShutting down...")
        log_security_event(
            EventType.SYSTEM_STOP,
            EventSeverity.INFO,
            "BlackVault stopped (user interrupt)",
        )
    except Exception as e:
        print(f"\n\nError: {str(e)}")
        log_security_event(
            EventType.SYSTEM_STOP,
            EventSeverity.CRITICAL,
            f"BlackVault crashed: {str(e)}",
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
