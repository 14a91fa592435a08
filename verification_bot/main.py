from __future__ import annotations


def main() -> None:
    """Launch the verification bot via its runner."""
    from verification_bot.runner import run_verification_bot

    run_verification_bot()


if __name__ == "__main__":
    main()
