#!/usr/bin/env python3
"""
CLI tool for the ECR Operator
Provides a kubectl-like interface for Repository, RepositoryLifecycle and
RepositoryPolicy objects
"""

import json
import os
from typing import Any, Dict, Iterator, List, Optional

import click
import requests
import yaml
from tabulate import tabulate

from resources import DEFAULT_NAMESPACE, PLURALS, plural_for_kind

API_BASE_URL = os.getenv("ECRCTL_SERVER", "http://localhost:8000/api/v1")
REQUEST_TIMEOUT = 30


def resolve_plural(resource_type: str) -> str:
    """Accept a plural ('repositories'), a kind ('Repository') or a singular."""
    value = resource_type.lower()
    if value in PLURALS:
        return value
    for plural, kind in PLURALS.items():
        if value == kind.lower():
            return plural
    raise click.BadParameter(
        f"unknown resource type '{resource_type}'. "
        f"Known types: {', '.join(sorted(PLURALS))}"
    )


def load_manifests(filename: str) -> List[Dict[str, Any]]:
    """Read one or more manifests from a YAML (multi-document) or JSON file."""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc]


class EcrOperatorCLI:
    """CLI client for the ECR Operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _send(self, method: str, endpoint: str, **kwargs) -> Optional[requests.Response]:
        url = f"{self.base_url}{endpoint}"
        try:
            return requests.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            return None

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        response = self._send(method, endpoint, **kwargs)
        if response is None:
            return None
        try:
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            click.echo(f"Error: {e}", err=True)
            try:
                click.echo(f"Detail: {response.json().get('detail')}", err=True)
            except ValueError:
                click.echo(f"Response: {response.text}", err=True)
            return None

    @staticmethod
    def object_path(plural: str, namespace: str, name: Optional[str] = None) -> str:
        path = f"/namespaces/{namespace}/{plural}"
        return f"{path}/{name}" if name else path

    def apply(self, manifest: Dict[str, Any]) -> Optional[str]:
        """Create the object, or replace its spec and labels if it exists."""
        kind = manifest.get("kind", "")
        plural = plural_for_kind(kind)
        if plural is None:
            click.echo(f"Error: unknown kind '{kind}'", err=True)
            return None

        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            click.echo(f"Error: {kind} manifest has no metadata.name", err=True)
            return None
        namespace = metadata.get("namespace") or DEFAULT_NAMESPACE
        labels = metadata.get("labels") or {}
        spec = manifest.get("spec") or {}

        response = self._send(
            "POST",
            self.object_path(plural, namespace),
            json={"name": name, "labels": labels, "spec": spec},
        )
        if response is None:
            return None
        if response.status_code == 201:
            return f"{plural}/{name} created"
        if response.status_code != 409:
            click.echo(
                f"Error applying {plural}/{name}: {response.status_code} "
                f"{response.text}",
                err=True,
            )
            return None

        result = self._make_request(
            "PUT",
            self.object_path(plural, namespace, name),
            json={"spec": spec, "labels": labels},
        )
        if result is None:
            return None
        return f"{plural}/{name} configured"

    def watch(
        self, kind: Optional[str] = None, namespace: Optional[str] = None
    ) -> Iterator[Dict[str, Any]]:
        """Yield events from the server-sent event stream."""
        params = {}
        if kind:
            params["kind"] = kind
        if namespace:
            params["namespace"] = namespace

        with requests.get(
            f"{self.base_url}/events", params=params, stream=True, timeout=None
        ) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if line and line.startswith("data: "):
                    yield json.loads(line[len("data: "):])


def _age(resource: Dict[str, Any]) -> str:
    return (resource.get("created_at") or "")[:19].replace("T", " ")


def _summary(resource: Dict[str, Any]) -> str:
    if resource.get("deletion_timestamp"):
        return "Terminating"
    if resource["kind"] == "Repository":
        return resource.get("status", {}).get("repositoryUri") or "Pending"
    if resource.get("finalizers"):
        return f"Applied to {resource['spec'].get('repositoryName', '')}"
    return "Pending"


def print_resources(resources: List[Dict[str, Any]], output: str) -> None:
    if output == "json":
        click.echo(json.dumps(resources, indent=2))
        return
    if output == "yaml":
        click.echo(yaml.safe_dump(resources, default_flow_style=False))
        return

    headers = ["NAMESPACE", "NAME", "STATUS", "CREATED"]
    if output == "wide":
        headers += ["GENERATION", "LABELS", "FINALIZERS"]

    rows = []
    for r in resources:
        row = [r["namespace"], r["name"], _summary(r), _age(r)]
        if output == "wide":
            labels = ",".join(f"{k}={v}" for k, v in sorted(r.get("labels", {}).items()))
            row += [r.get("generation"), labels or "-", ",".join(r.get("finalizers", [])) or "-"]
        rows.append(row)

    if rows:
        click.echo(tabulate(rows, headers=headers, tablefmt="simple"))
    else:
        click.echo("No resources found.")


@click.group()
@click.option(
    "--server",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API (or set ECRCTL_SERVER)",
)
@click.pass_context
def cli(ctx, server):
    """ECR Operator CLI - kubectl-like interface for ECR repositories"""
    ctx.obj = EcrOperatorCLI(server)


@cli.command()
@click.option(
    "--filename",
    "-f",
    "filename",
    required=True,
    type=click.Path(exists=True),
    help="YAML or JSON manifest file",
)
@click.pass_obj
def apply(client: EcrOperatorCLI, filename):
    """Create or update objects from a manifest file"""
    failed = False
    for manifest in load_manifests(filename):
        message = client.apply(manifest)
        if message:
            click.echo(message)
        else:
            failed = True
    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("resource_type")
@click.argument("name", required=False)
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.option("--all-namespaces", "-A", is_flag=True, help="List across all namespaces")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "wide", "json", "yaml"]),
    default="table",
)
@click.pass_obj
def get(client: EcrOperatorCLI, resource_type, name, namespace, all_namespaces, output):
    """List objects of a type, or show one by name"""
    plural = resolve_plural(resource_type)

    if name:
        result = client._make_request(
            "GET", client.object_path(plural, namespace, name)
        )
        resources = [result] if result else []
    elif all_namespaces:
        resources = client._make_request("GET", f"/{plural}") or []
    else:
        resources = client._make_request("GET", client.object_path(plural, namespace)) or []

    print_resources(resources, output)


@cli.command()
@click.argument("resource_type")
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
@click.pass_obj
def describe(client: EcrOperatorCLI, resource_type, name, namespace, output):
    """Show the full stored state of an object"""
    plural = resolve_plural(resource_type)
    result = client._make_request("GET", client.object_path(plural, namespace, name))

    if result:
        if output == "json":
            click.echo(json.dumps(result, indent=2))
        else:
            click.echo(yaml.safe_dump(result, default_flow_style=False))


@cli.command()
@click.argument("resource_type")
@click.argument("name")
@click.option("--namespace", "-n", default=DEFAULT_NAMESPACE, show_default=True)
@click.confirmation_option(prompt="Are you sure you want to delete this object?")
@click.pass_obj
def delete(client: EcrOperatorCLI, resource_type, name, namespace):
    """Delete an object (the operator removes the ECR counterpart)"""
    plural = resolve_plural(resource_type)
    result = client._make_request(
        "DELETE", client.object_path(plural, namespace, name)
    )

    if result:
        click.echo(f"{plural}/{name} deletion requested")


@cli.command()
@click.option("--kind", "-k", help="Only show events for this kind")
@click.option("--namespace", "-n", help="Only show events in this namespace")
@click.pass_obj
def watch(client: EcrOperatorCLI, kind, namespace):
    """Stream store and reconcile events"""
    try:
        for event in client.watch(kind=kind, namespace=namespace):
            click.echo(
                f"{event['timestamp']}  {event['event_type']:<10}  "
                f"{event['kind']}/{event['namespace']}/{event['name']}"
            )
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
