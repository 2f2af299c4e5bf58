# src/fhir_map_tool/cli.py
"""
Command-line interface for fhir_map_tool.

Subcommands
-----------
parse
    Parse a FHIR or CDA document (.xml or .json) and print it in the
    requested format.

transform
    Apply a StructureMap to a document and either:
        - list the available transform keywords (with --list), or
        - write the result to a file (default), or
        - print the result to stdout (with --stdout).

install
    Install an implementation guide package (.tgz) and print the outcome.

Definitions come from the directories given with --definitions and the
packages given with --package, in addition to those named in the config file.

Exit codes
----------
0  success
1  handled, expected error (FhirMapToolError or KeyboardInterrupt)
2  CLI usage error (argparse or validation failure)
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from . import __version__
from .codec import FORMATS, format_from_suffix
from .config import AppConfig, PackageRef, load_config
from .exceptions import FhirMapToolError, IoError
from .logging_utils import configure_logging
from .resolver import InMemoryResolver
from .resolver.packages import PackageInstallationSpec, PackageInstaller
from .service import TransformService, opposite_format
from .transform.registry import available_transforms

# ------------------------------------------------------------------------------
# globals
# ------------------------------------------------------------------------------

LOG = logging.getLogger("fhir_map_tool")

EXIT_OK = 0
EXIT_ERR = 1
EXIT_CLI = 2

# ------------------------------------------------------------------------------
# Parser construction
# ------------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argparse parser and subcommands.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser with subcommands: parse, transform, install.
    """
    parser = argparse.ArgumentParser(
        prog="fhir-map",
        description="Parse FHIR and CDA documents and transform them with StructureMaps.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML config file (overrides defaults).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv, -vvv).",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fhir-map-tool (cli) {__version__}",
    )
    parser.add_argument(
        "--definitions",
        type=Path,
        action="append",
        default=[],
        metavar="DIR",
        help="Directory of JSON conformance resources (repeatable).",
    )
    parser.add_argument(
        "--package",
        type=Path,
        action="append",
        default=[],
        metavar="TGZ",
        help="Implementation guide package archive to load (repeatable).",
    )
    parser.add_argument(
        "--lenient",
        action="store_true",
        help="Report structural problems in source documents as warnings.",
    )

    sub = parser.add_subparsers(dest="cmd", required=True)

    # parse
    s1 = sub.add_parser("parse", help="Parse a FHIR or CDA document.")
    s1.add_argument(
        "path",
        type=Path,
        help="Path to the document (.xml or .json).",
    )
    s1.add_argument(
        "--to",
        choices=FORMATS,
        default="json",
        help="Output format (default: json).",
    )
    s1.add_argument(
        "--compact",
        action="store_true",
        help="Write compact output instead of pretty-printing.",
    )

    # transform
    s2 = sub.add_parser("transform", help="Apply a StructureMap to a document.")
    s2.add_argument(
        "path",
        type=Path,
        nargs="?",
        help="Path to the source document (.xml or .json).",
    )
    group = s2.add_mutually_exclusive_group()
    group.add_argument("--map", dest="map_url", help="Canonical URL of the StructureMap.")
    group.add_argument(
        "--map-file",
        type=Path,
        default=None,
        help="StructureMap JSON file to apply.",
    )
    s2.add_argument(
        "--list",
        action="store_true",
        help="List the available transform keywords and exit.",
    )
    s2.add_argument(
        "--to",
        choices=FORMATS,
        default=None,
        help="Output format (default: json for xml input, xml for json input).",
    )
    s2.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Directory to write the result (defaults to config.default_output_dir).",
    )
    s2.add_argument(
        "--stdout",
        action="store_true",
        help="Write the result to stdout.",
    )
    s2.add_argument(
        "--compact",
        action="store_true",
        help="Write compact output instead of pretty-printing.",
    )

    # install
    s3 = sub.add_parser("install", help="Install an implementation guide package.")
    s3.add_argument("package_path", type=Path, help="Path to the package archive (.tgz).")
    s3.add_argument("--name", default=None, help="Package name (default: file stem).")
    s3.add_argument("--pkg-version", default="current", help="Package version.")
    s3.add_argument(
        "--type",
        dest="types",
        action="append",
        default=[],
        help="Resource type to install (repeatable; default: config list).",
    )
    s3.add_argument(
        "--mode",
        choices=("store", "storeAndInstall", "cacheOnly"),
        default="storeAndInstall",
        help="Install mode (default: storeAndInstall).",
    )

    return parser


# ------------------------------------------------------------------------------
# Validation helpers
# ------------------------------------------------------------------------------


def _validate_existing_file(path: Path) -> None:
    """
    Validate that a path exists, is a file and is readable.

    Raises
    ------
    IoError
        If the path does not exist, is not a file, or is not readable.
    """
    if not path.exists():
        raise IoError(f"File not found: {path}")
    if not path.is_file():
        raise IoError(f"Not a file: {path}")
    if not os.access(path, os.R_OK):
        raise IoError(f"File is not readable: {path}")


def _validate_output_dir(output_dir: Path) -> None:
    """
    Make sure ``output_dir`` exists and is writable.

    Raises
    ------
    IoError
        If the directory cannot be created or is not writable.
    """
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"Cannot create output directory: {output_dir} ({e})") from e
    if not os.access(output_dir, os.W_OK):
        raise IoError(f"Output directory not writable: {output_dir}")


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise IoError(f"Failed to read {path}: {e}") from e


# ------------------------------------------------------------------------------
# Setup helpers
# ------------------------------------------------------------------------------


def _load_app_config(path: Optional[Path]) -> AppConfig:
    """
    Load the config file, turning config problems into tool errors.

    Raises
    ------
    FhirMapToolError
        If the file cannot be read or does not hold a valid config.
    """
    if path is not None:
        _validate_existing_file(path)
    try:
        return load_config(path)
    except (TypeError, ValueError, yaml.YAMLError) as e:
        raise FhirMapToolError(f"Invalid config file {path}: {e}") from e


def _effective_config(
    cfg: AppConfig, definitions: List[Path], packages: List[Path], lenient: bool
) -> AppConfig:
    """Merge command-line definition sources into the loaded config."""
    refs = tuple(PackageRef(name=p.stem, version="current", url=str(p)) for p in packages)
    return dataclasses.replace(
        cfg,
        definition_dirs=tuple(cfg.definition_dirs) + tuple(definitions),
        packages=tuple(cfg.packages) + refs,
        strict_parsing=cfg.strict_parsing and not lenient,
    )


def _write_output(data: bytes, out_path: Optional[Path]) -> None:
    if out_path is None:
        sys.stdout.write(data.decode("utf-8"))
        if not data.endswith(b"\n"):
            sys.stdout.write("\n")
        sys.stdout.flush()
        return
    try:
        out_path.write_bytes(data)
    except OSError as e:
        raise IoError(f"Failed to write {out_path}: {e}") from e
    LOG.info("Wrote %s", out_path)


# ------------------------------------------------------------------------------
# Command handlers
# ------------------------------------------------------------------------------


def _cmd_parse(cfg: AppConfig, path: Path, to_fmt: str, pretty: bool) -> int:
    """
    Parse: read a document and print it as ``to_fmt``.

    Raises
    ------
    FhirMapToolError
        If the file is missing, unreadable, or not a valid document.
    """
    _validate_existing_file(path)
    fmt = format_from_suffix(path)
    service = TransformService.from_config(cfg)
    element = service.parse_document(_read_bytes(path), fmt)
    _write_output(service.compose_document(element, to_fmt, pretty), None)
    return EXIT_OK


def _cmd_transform(
    cfg: AppConfig,
    path: Optional[Path],
    map_url: Optional[str],
    map_file: Optional[Path],
    list_only: bool,
    to_fmt: Optional[str],
    output_dir: Optional[Path],
    to_stdout: bool,
    pretty: bool,
) -> int:
    """
    Transform: apply a StructureMap to a document.

    Returns
    -------
    int
        EXIT_OK on success, EXIT_ERR when the transform fails, EXIT_CLI when
        required arguments are missing.

    Raises
    ------
    FhirMapToolError
        For unreadable input or unwritable output.
    """
    if list_only:
        print("Registered StructureMap transforms:")
        for name in available_transforms():
            print(f"    {name}")
        return EXIT_OK

    if path is None or (map_url is None and map_file is None):
        LOG.error("transform needs a PATH and one of --map or --map-file")
        return EXIT_CLI

    _validate_existing_file(path)
    fmt = format_from_suffix(path)
    map_data = None
    if map_file is not None:
        _validate_existing_file(map_file)
        map_data = _read_bytes(map_file)

    out_fmt = to_fmt or opposite_format(fmt)
    out_path = None
    if not to_stdout:
        out_dir = output_dir or cfg.default_output_dir
        _validate_output_dir(out_dir)
        out_path = out_dir / f"{path.stem}.{out_fmt}"

    service = TransformService.from_config(cfg)
    outcome = service.transform_document(
        _read_bytes(path),
        fmt,
        map_url=map_url,
        map_data=map_data,
        output_format=out_fmt,
        pretty=pretty,
    )
    if not outcome.ok:
        err = outcome.error
        LOG.error("[%s] %s", err.code, err.message)
        return EXIT_ERR
    _write_output(outcome.output, out_path)
    return EXIT_OK


def _cmd_install(
    cfg: AppConfig,
    package_path: Path,
    name: Optional[str],
    version: str,
    types: List[str],
    mode: str,
) -> int:
    """
    Install: read a package archive into a fresh store and report counts.

    Raises
    ------
    FhirMapToolError
        If the archive cannot be read.
    """
    _validate_existing_file(package_path)
    installer = PackageInstaller(InMemoryResolver(), default_types=cfg.install_resource_types)
    outcome = installer.install(
        PackageInstallationSpec(
            package_url=str(package_path),
            name=name or package_path.stem,
            version=version,
            resource_types=types,
            install_mode=mode,
        )
    )
    print(outcome.model_dump_json(indent=2))
    return EXIT_OK


# ------------------------------------------------------------------------------
# Entrypoint
# ------------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> int:
    """
    CLI entrypoint.

    Parameters
    ----------
    argv : list[str] or None, default None
        Argument list for testing; None uses sys.argv[1:].

    Returns
    -------
    int
        Process exit code (EXIT_OK, EXIT_ERR, or EXIT_CLI).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)

    try:
        cfg = _effective_config(
            _load_app_config(args.config), args.definitions, args.package, args.lenient
        )
        if args.cmd == "parse":
            return _cmd_parse(cfg, args.path, args.to, pretty=not args.compact)
        if args.cmd == "transform":
            return _cmd_transform(
                cfg,
                path=args.path,
                map_url=args.map_url,
                map_file=args.map_file,
                list_only=bool(args.list),
                to_fmt=args.to,
                output_dir=args.output_dir,
                to_stdout=bool(args.stdout),
                pretty=not args.compact,
            )
        if args.cmd == "install":
            return _cmd_install(
                cfg,
                package_path=args.package_path,
                name=args.name,
                version=args.pkg_version,
                types=args.types,
                mode=args.mode,
            )
        parser.error("Unknown command")
        return EXIT_CLI

    except FhirMapToolError as e:
        LOG.error("%s", e)
        return EXIT_ERR
    except KeyboardInterrupt:
        LOG.error("Interrupted")
        return EXIT_ERR


if __name__ == "__main__":
    raise SystemExit(main())
