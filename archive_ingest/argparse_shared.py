import argparse

def get_base_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Podcast archive ingestion harness")
    parser.add_argument("-e", "--env-file", help="Path to a custom .env file", default=None)
    return parser

def add_dry_run_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-d", "--dry-run", action="store_true", help="Show what would be done without transferring files or running phases")

def add_log_level_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-l", "--log-level", help="Set log level (DEBUG, INFO, WARNING, ERROR)", default="INFO")

def add_sites_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sites", metavar="ID,...", help="Process only these sites (comma-separated)", default=None)

def add_sync_folders_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sync-folders", metavar="FOLDER,...", help="Restrict sync phases to these folders (comma-separated)", default=None)

def split_csv(value):
    """Split a comma-separated CLI value, dropping blanks. None stays None."""
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]
