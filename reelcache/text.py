"""Centralized user-facing text for the reelcache CLI."""

from __future__ import annotations


class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "reelcache: fetch-once media source cache with incremental render planning."
    HELP_PROJECT = "Project root directory (defaults to the current directory)."
    HELP_VERBOSE = "Print debug logging to stderr."
    HELP_FETCH_LINKS = "Source references (URLs or paths relative to the project root)."
    HELP_FETCH_FROM_FILE = "Read additional references from a file, one per line (# starts a comment)."
    HELP_FETCH_FORCE = "Re-download or re-copy sources even when a cached file exists."
    HELP_FETCH_REPROBE = "Re-run ffprobe on cached files."
    HELP_LOOKUP_LINK = "Source reference to look up in the cache index."
    HELP_MIGRATE = "Move project cache files into the shared library."
    HELP_MIGRATE_DRY_RUN = "Print the decisions without moving files or writing indexes."
    HELP_PRUNE_OLDER_THAN = "Prune entries retrieved before this age (e.g. 30d, 6m, 1y)."
    HELP_PRUNE_DRY_RUN = "List what would be removed without deleting anything."
    HELP_VERIFY_FIX = "Mark corrupt URL sources for re-download."
    HELP_PLAN_SEGMENTS = "JSON file holding the list of segment descriptors."
    HELP_PLAN_FORCE = "Treat every segment as needing a render."
    HELP_PLAN_PRUNE = "Drop stored render state for outputs no longer in the plan."
    HELP_DOCTOR = "Check external tools and cache directories."
    HELP_USE_LIBRARY = "Operate on the shared library index instead of the project cache."

    ERROR_NO_LINKS = "No source references given. Pass links or use --from-file."
    ERROR_FROM_FILE_MISSING = "Reference list not found: {path}"
    ERROR_ROW_FAILED = "row {index:03d} {link}: {reason}"
    ERROR_INDEX_IO = "Cache index unavailable: {reason}"
    ERROR_STATE_IO = "Render state unavailable: {reason}"
    ERROR_SEGMENTS_INVALID = "Unable to read segments from {path}: {reason}"
    ERROR_TOOL_MISSING = "`{tool}` was not found. Install it or set tools.{tool}.path in reelcache.json."
    ERROR_AGE_INVALID = "Invalid --older-than value: {reason}"
    ERROR_CONFIG_INVALID = "Unable to read {path}: {reason}"

    INFO_ROW_RESOLVED = "row {index:03d} {status:<10} {path}"
    INFO_ROW_PROBED = " (probed {duration:.1f}s)"
    INFO_FETCH_SUMMARY = "{ok} resolved, {failed} failed; index saved to {path}."
    INFO_FETCH_UNCHANGED = "{ok} resolved, {failed} failed; index unchanged."
    INFO_FETCH_USAGE = "{ok} resolved, {failed} failed; usage recorded in {path}."
    INFO_LOOKUP_MISS = "No cached entry for {link}."
    INFO_LOOKUP_HIT = (
        "identifier: {identifier}\n"
        "type: {source_type}\n"
        "path: {path}\n"
        "size: {size}\n"
        "retrieved: {retrieved}\n"
        "duration: {duration}"
    )
    INFO_MIGRATE_NOTHING = "No entries in the local cache index, nothing to migrate."
    INFO_MIGRATE_EMPTY_DIR = "Local cache directory is now empty: {path}"
    INFO_PRUNE_SUMMARY = "Prune {label}: {pruned} removed, {freed} freed, {kept} kept"
    INFO_VERIFY_SUMMARY = "{valid} valid, {missing} missing, {corrupt} corrupt, {fixed} fixed"
    INFO_PLAN_SUMMARY = "{render} to render, {skip} up to date"
    INFO_PLAN_PRUNED = "Pruned {count} stale render state entr{plural}."
    INFO_DOCTOR_ALL_PASSED = "All checks passed."
    INFO_DOCTOR_FAILED = "{count} check(s) failed."

    DOCTOR_TOOL_FOUND = "`{tool}` found at {path}"
    DOCTOR_TOOL_MISSING = "`{tool}` not found on PATH"
    DOCTOR_TOOL_MISSING_DETAIL = "Install {tool} or configure tools.{tool}.path."
    DOCTOR_CONFIG_EXISTS = "Config file: {path}"
    DOCTOR_CONFIG_DEFAULT = "Using default configuration"
    DOCTOR_DIR_CREATED = "Created {path}"
    DOCTOR_DIR_WRITABLE = "{path} is writable"
    DOCTOR_DIR_CANNOT_CREATE = "Cannot create {path}"
    DOCTOR_DIR_NOT_WRITABLE = "{path} is not writable"

    TABLE_PLAN_TITLE = "Render plan"
    TABLE_HEADER_INDEX = "#"
    TABLE_HEADER_ACTION = "Action"
    TABLE_HEADER_REASON = "Reason"
    TABLE_HEADER_OUTPUT = "Output"
