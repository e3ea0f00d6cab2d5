#!/usr/bin/env python
"""Command-line interface for trust-sync.

This module provides the main CLI entry point, which either runs the
reconcile loop against a cluster or renders a Bundle manifest locally.
"""

import sys

import click
from icecream import ic
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from trust_sync import __version__, console
from trust_sync.bundle.package import DefaultPackage, load_package_from_file
from trust_sync.bundle.parsing import parse_bundle_file
from trust_sync.bundle.source import BundleResolver
from trust_sync.core.cluster import Cluster
from trust_sync.core.controller import DEFAULT_TRUST_NAMESPACE, BundleReconciler, ControllerOptions
from trust_sync.exceptions import (
    BundleParsingError,
    ClusterConnectionError,
    PackageLoadError,
    TrustSyncError,
)


def load_default_package(location: str | None) -> DefaultPackage | None:
    """Load the default CA package if a location was given.

    Raises:
        click.ClickException: If the package cannot be loaded.

    """
    if location is None:
        return None
    try:
        package = load_package_from_file(location)
    except PackageLoadError as e:
        raise click.ClickException(str(e)) from None
    console.success(f"Loaded default CA package {console.highlight(package.string_id)}")
    return package


def render_bundle(cluster: Cluster, options: ControllerOptions, package: DefaultPackage | None, file: str) -> None:
    """Resolve a Bundle manifest and print the canonical PEM bundle.

    Args:
        cluster: Cluster the sources are read from.
        options: Driver options.
        package: The default CA package, if loaded.
        file: Path to the Bundle manifest.

    Raises:
        click.ClickException: If the manifest cannot be parsed or resolved.

    """
    try:
        bundle = parse_bundle_file(file)
    except BundleParsingError as e:
        raise click.ClickException(str(e)) from None
    ic(bundle)

    resolver = BundleResolver(
        cluster.core_v1,
        options.trust_namespace,
        default_package=package,
        filter_expired=options.filter_expired_certs,
        request_timeout=options.request_timeout,
    )
    try:
        with console.spinner(f"Resolving Bundle {bundle.name}"):
            resolved = resolver.resolve(bundle.spec)
    except TrustSyncError as e:
        raise click.ClickException(f"Failed to resolve Bundle {bundle.name}: {e}") from None

    click.echo(resolved.data, nl=False)


@click.command(help="Synchronize trust bundles into ConfigMaps and Secrets across namespaces")
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.option(
    "--trust-namespace",
    default=DEFAULT_TRUST_NAMESPACE,
    show_default=True,
    help="namespace holding source ConfigMaps and Secrets",
)
@click.option("--default-package-location", required=False, help="path to a JSON default CA package")
@click.option("--filter-expired-certs", is_flag=True, default=False, help="drop expired certificates from bundles")
@click.option("--workers", type=click.IntRange(min=1), default=4, show_default=True, help="concurrent target writes")
@click.option(
    "--interval", type=click.FloatRange(min=0), default=30.0, show_default=True, help="seconds between passes"
)
@click.option("--once", is_flag=True, default=False, help="run a single reconcile pass and exit")
@click.option("--bundle", required=False, help="only reconcile this Bundle")
@click.option("--render", type=click.Path(dir_okay=False), required=False, help="resolve a Bundle manifest and print it")
@click.option("--context", required=False, help="kubeconfig context to use")
@click.option("--in-cluster", is_flag=True, default=False, help="use the pod service account")
@click.option(
    "--request-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=30.0,
    show_default=True,
    help="API request timeout in seconds",
)
def cli(
    version: bool,
    debug: bool,
    trust_namespace: str,
    default_package_location: str | None,
    filter_expired_certs: bool,
    workers: int,
    interval: float,
    once: bool,
    bundle: str | None,
    render: str | None,
    context: str | None,
    in_cluster: bool,
    request_timeout: float,
) -> None:
    """Process CLI arguments and run the requested action.

    Args:
        version: Print version and exit.
        debug: Enable debug output.
        trust_namespace: Namespace holding source objects.
        default_package_location: Path to the default CA package.
        filter_expired_certs: Drop expired certificates.
        workers: Size of the target write pool.
        interval: Seconds between reconcile passes.
        once: Run a single pass.
        bundle: Only reconcile this Bundle.
        render: Bundle manifest to resolve and print.
        context: Kubeconfig context.
        in_cluster: Use in-cluster credentials.
        request_timeout: API request timeout.

    """
    if not debug:
        ic.disable()

    if version:
        click.echo(__version__)
        return

    options = ControllerOptions(
        trust_namespace=trust_namespace,
        default_package_location=default_package_location,
        filter_expired_certs=filter_expired_certs,
        workers=workers,
        interval=interval,
        once=once,
        bundle=bundle,
        request_timeout=request_timeout,
    )
    ic(options)

    package = load_default_package(options.default_package_location)

    try:
        cluster = Cluster(context=context, in_cluster=in_cluster, request_timeout=options.request_timeout)

        if render:
            render_bundle(cluster, options, package, render)
            return

        reconciler = BundleReconciler(cluster, options, default_package=package)
        results = reconciler.run()
    except ClusterConnectionError as e:
        console.error(f"Cluster connection failed: {e}")
        sys.exit(1)
    except (ApiException, HTTPError) as e:
        console.error(f"Kubernetes API request failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.warning("Interrupted")
        sys.exit(130)

    console.results_summary(results)
    if not all(result.synced for result in results):
        sys.exit(1)


if __name__ == "__main__":
    cli()
