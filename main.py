"""
Konfi Badge Engine
Main entry point for running the engine from a checkout
"""

from konfi_badges.cli import run

if __name__ == "__main__":
    run()
