"""Print a provider bearer token to stdout for local testing.

Usage:
    python -m backend.print_access_token <provider_code> [expires_minutes]
"""
import sys

from backend.auth.jwt_handler import create_access_token


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    if not args or not args[0].strip():
        print("Usage: python -m backend.print_access_token <provider_code> [expires_minutes]", file=sys.stderr)
        sys.exit(1)

    expires_minutes = int(args[1]) if len(args) > 1 else None
    print(create_access_token(args[0].strip(), expires_minutes=expires_minutes))


if __name__ == "__main__":
    main()
