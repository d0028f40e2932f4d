#!/usr/bin/env python3
"""
Scan job worker CLI

Runs the queue worker, or performs single steps of the pipeline by hand:
resolving registry credentials, pulling an artifact into a docker-archive,
and scanning an archive.
"""

import argparse
import asyncio
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
from pathlib import Path

from .archive import ArchiveBuilder
from .auth import RegistryKind, RegistryParams, docker_config_json, resolve
from .config import WorkerConfig
from .errors import ScanJobError
from .puller import OCIPuller
from .scanner import GrypeScanner
from .worker import Worker

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def setup_logging(level: str = 'INFO') -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


def _params_from_args(args) -> RegistryParams:
    return RegistryParams(
        github_username=args.gh_username or os.environ.get('GITHUB_USERNAME', ''),
        github_token=args.gh_token or os.environ.get('GITHUB_TOKEN', ''),
        ecr_account_id=args.aws_account_id or '',
        ecr_region=args.region or '',
        acr_login_server=args.acr_login_server or '',
        acr_tenant_id=args.acr_tenant_id or '',
    )


def worker_command(args):
    """Run the queue worker until interrupted"""
    try:
        if args.config:
            config = WorkerConfig.from_file(args.config)
        else:
            config = WorkerConfig.from_env()
    except ScanJobError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    setup_logging(args.log_level or config.log_level)
    worker = Worker.from_config(config)

    async def main():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await worker.run(stop_event)

    asyncio.run(main())
    return 0


def auth_command(args):
    """Print or write a Docker config.json for a registry"""
    setup_logging(args.log_level or 'WARNING')
    try:
        credentials = resolve(args.registry, _params_from_args(args))
    except ScanJobError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    config_json = docker_config_json(credentials)
    if not args.output:
        print(config_json)
        return 0

    output = Path(args.output)
    output.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        f.write(config_json)
    print(f"Credentials written to {output}", file=sys.stderr)
    return 0


def fetch_command(args):
    """Pull an artifact and write it as a docker-archive"""
    setup_logging(args.log_level or 'INFO')
    workdir = args.workdir or tempfile.mkdtemp(prefix='scanjob-')
    try:
        credentials = resolve(args.registry, _params_from_args(args))
        with OCIPuller().pull(args.reference, credentials) as pulled:
            builder = ArchiveBuilder(workdir, keep_oci_manifest=not args.no_oci_manifest,
                                     cleanup=not args.keep_files)
            bundle = builder.build(pulled.manifest, pulled.store, str(pulled.reference), args.output)
    except ScanJobError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        # Only a directory we created ourselves is removed
        if not args.workdir and not args.keep_files:
            shutil.rmtree(workdir, ignore_errors=True)

    print(json.dumps({
        'archive': str(bundle.path),
        'members': bundle.members,
        'manifest': bundle.docker_manifest,
        'workdir': workdir if args.keep_files else None,
    }, indent=2))
    return 0


def scan_command(args):
    """Scan a docker-archive and print the scanner's report"""
    setup_logging(args.log_level or 'WARNING')
    scanner = GrypeScanner(binary=args.scanner, output_format=args.output_format)
    try:
        result = scanner.scan(args.archive)
    except ScanJobError as e:
        print(f"Error: {e}", file=sys.stderr)
        output = getattr(e, 'output', b'')
        if output:
            print(output.decode('utf-8', errors='replace'), file=sys.stderr)
        return 1

    if args.summary:
        print(json.dumps(result.severity_counts(), indent=2))
    else:
        sys.stdout.write(result.raw_output.decode('utf-8', errors='replace'))
    return 0


def _add_registry_arguments(parser):
    parser.add_argument('--registry', choices=[k.value for k in RegistryKind], default='ghcr',
                        help='Registry type (default: ghcr)')
    parser.add_argument('--gh-username', help='GitHub username (ghcr; default: $GITHUB_USERNAME)')
    parser.add_argument('--gh-token', help='GitHub personal access token (ghcr; default: $GITHUB_TOKEN)')
    parser.add_argument('--aws-account-id', help='AWS account id (ecr)')
    parser.add_argument('--region', help='AWS region (ecr)')
    parser.add_argument('--acr-login-server', help='ACR login server, e.g. myregistry.azurecr.io (acr)')
    parser.add_argument('--acr-tenant-id', help='Azure tenant id (acr)')


def main(argv=None):
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description='OCI artifact vulnerability scan worker'
    )
    parser.add_argument('--log-level', help='Log level (default: INFO, or LOG_LEVEL for the worker)')
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # worker command
    worker_parser = subparsers.add_parser('worker', help='Consume scan jobs from the queue')
    worker_parser.add_argument('--config', help='YAML config file; environment variables override it')

    # auth command
    auth_parser = subparsers.add_parser('auth', help='Resolve registry credentials as Docker config JSON')
    _add_registry_arguments(auth_parser)
    auth_parser.add_argument('--output', help='Write to this file (mode 0600) instead of stdout')

    # fetch command
    fetch_parser = subparsers.add_parser('fetch', help='Pull an artifact into a docker-archive')
    fetch_parser.add_argument('reference', help='Artifact reference, e.g. ghcr.io/org/app:v1.0')
    _add_registry_arguments(fetch_parser)
    fetch_parser.add_argument('--output', default='image.tar', help='Archive path (default: image.tar)')
    fetch_parser.add_argument('--workdir', help='Directory for intermediate files (default: a temp dir)')
    fetch_parser.add_argument('--no-oci-manifest', action='store_true',
                              help='Leave the raw OCI manifest out of the archive')
    fetch_parser.add_argument('--keep-files', action='store_true',
                              help='Keep the loose config/layer files in the working directory')

    # scan command
    scan_parser = subparsers.add_parser('scan', help='Scan a docker-archive')
    scan_parser.add_argument('archive', help='Path to the docker-archive')
    scan_parser.add_argument('--scanner', default='grype', help='Scanner binary (default: grype)')
    scan_parser.add_argument('--output-format', default='json', help='Scanner output format (default: json)')
    scan_parser.add_argument('--summary', action='store_true', help='Print severity counts only')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # Run command
    if args.command == 'worker':
        return worker_command(args)
    elif args.command == 'auth':
        return auth_command(args)
    elif args.command == 'fetch':
        return fetch_command(args)
    elif args.command == 'scan':
        return scan_command(args)
    else:
        print(f"Error: Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
