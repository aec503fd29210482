import typer
import requests
from dotenv import load_dotenv
import os
import json
import yaml
from typing import List, Optional

load_dotenv()

app = typer.Typer(name="telescaler", help="Telescaler autoscaler CLI")

# Default values for local development
TELESCALER_HOST = os.getenv("TELESCALER_HOST", "localhost")
TELESCALER_PORT = os.getenv("TELESCALER_PORT", "8000")

API_URL = f"http://{TELESCALER_HOST}:{TELESCALER_PORT}"

def check_service_running():
    """Check if the Telescaler controller is running and provide helpful error messages."""
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
        if response.status_code == 200:
            return True
        typer.echo(f"Telescaler controller is unhealthy (HTTP {response.status_code}).", err=True)
    except requests.exceptions.ConnectionError:
        typer.echo(f"Telescaler controller is not running at {API_URL}.", err=True)
        typer.echo("", err=True)
        typer.echo("To start it:", err=True)
        typer.echo("   telescaler-controller --policy-file config/policies.yml", err=True)
    except requests.exceptions.Timeout:
        typer.echo("Telescaler controller is not responding (timeout).", err=True)
    raise typer.Exit(1)

def _handle(response: requests.Response):
    """Print a JSON response, exiting non-zero on HTTP errors."""
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if response.status_code >= 400:
        detail = body.get("detail", body) if isinstance(body, dict) else body
        typer.echo(f"Error ({response.status_code}): {detail}", err=True)
        raise typer.Exit(1)
    return body

def _print(body):
    typer.echo(json.dumps(body, indent=2))

@app.command()
def info():
    """Show controller status and configuration."""
    check_service_running()
    health = _handle(requests.get(f"{API_URL}/health", timeout=5))
    details = health.get("details", {})
    config = _handle(requests.get(f"{API_URL}/info", timeout=5))

    typer.echo(f"Telescaler Controller: {health.get('status', 'unknown')}")
    typer.echo(f"   API: {API_URL}")
    typer.echo(f"   Orchestrator: {config.get('orchestrator')}")
    typer.echo(f"   Auto scaling: {'enabled' if details.get('auto_scaling_enabled') else 'disabled'}")
    typer.echo(f"   Policies: {details.get('policies', 0)} ({details.get('enabled_policies', 0)} enabled)")
    typer.echo(f"   Instances: {details.get('total_instances', 0)} across {len(details.get('services', []))} services")
    typer.echo(f"   Active actions: {details.get('active_actions', 0)}")

@app.command()
def policies():
    """List scaling policies."""
    check_service_running()
    body = _handle(requests.get(f"{API_URL}/policies"))
    typer.echo(yaml.dump(body.get("policies", []), default_flow_style=False, sort_keys=False))

@app.command()
def apply(config: str):
    """Apply scaling policies and alert rules from a YAML/JSON file."""
    check_service_running()

    if not os.path.exists(config):
        typer.echo(f"Config file '{config}' not found", err=True)
        raise typer.Exit(1)

    try:
        with open(config) as f:
            if config.endswith(('.yml', '.yaml')):
                document = yaml.safe_load(f)
            else:
                document = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        typer.echo(f"Could not parse '{config}': {e}", err=True)
        raise typer.Exit(1)

    result = _handle(requests.post(f"{API_URL}/policies/apply", json=document))
    typer.echo(f"Applied {len(result.get('policies', []))} policies and {len(result.get('alertRules', []))} alert rules")
    _print(result)

@app.command("remove-policy")
def remove_policy(policy_id: str):
    """Remove a scaling policy."""
    check_service_running()
    _print(_handle(requests.delete(f"{API_URL}/policies/{policy_id}")))

@app.command()
def scale(service: str, instances: int):
    """Set the instance count of a service (clamped to its policy bounds)."""
    check_service_running()
    result = _handle(requests.post(f"{API_URL}/services/{service}/scale", json={"instances": instances}))
    if result.get("status") == "no_change":
        typer.echo(f"'{service}' already has {result.get('instances')} instances")
    else:
        typer.echo(f"Scaling '{service}' to {result.get('instances')} instances")
        _print(result.get("action"))

@app.command("scale-up")
def scale_up(service: str, count: int = typer.Option(1, "--count", "-n", help="Instances to add")):
    """Add instances to a service."""
    check_service_running()
    _print(_handle(requests.post(f"{API_URL}/services/{service}/scale-up", json={"count": count})))

@app.command("scale-down")
def scale_down(service: str, count: int = typer.Option(1, "--count", "-n", help="Instances to remove")):
    """Remove instances from a service."""
    check_service_running()
    _print(_handle(requests.post(f"{API_URL}/services/{service}/scale-down", json={"count": count})))

@app.command()
def instances(service: str):
    """List the instances of a service."""
    check_service_running()
    body = _handle(requests.get(f"{API_URL}/services/{service}/instances"))
    typer.echo(f"{service}: {body.get('active', 0)} active, {body.get('healthy', 0)} healthy")
    for instance in body.get("instances", []):
        typer.echo(f"   {instance['id']}  {instance['status']:<9} {instance['health_status']}")

@app.command()
def actions():
    """List in-flight and recently finished scaling actions."""
    check_service_running()
    body = _handle(requests.get(f"{API_URL}/actions"))
    entries = body.get("actions", [])
    if not entries:
        typer.echo("No recent scaling actions")
        return
    for action in entries:
        line = (
            f"{action['id']}  {action['service']} {action['action']} "
            f"{action['current_instances']} -> {action['target_instances']}  [{action['status']}]"
        )
        if action.get("error"):
            line += f"  {action['error']}"
        typer.echo(line)

@app.command()
def metric(
    name: str,
    aggregation: Optional[str] = typer.Option(None, "--aggregation", "-a", help="sum, avg, min, max, count or p95"),
    start: Optional[float] = typer.Option(None, help="Range start (epoch seconds)"),
    end: Optional[float] = typer.Option(None, help="Range end (epoch seconds)"),
):
    """Show recorded points of a metric, or an aggregate over them."""
    check_service_running()
    params = {k: v for k, v in {"start": start, "end": end}.items() if v is not None}
    if aggregation:
        params["aggregation"] = aggregation
        _print(_handle(requests.get(f"{API_URL}/metrics/{name}/aggregate", params=params)))
    else:
        _print(_handle(requests.get(f"{API_URL}/metrics/{name}", params=params)))

@app.command()
def record(
    name: str,
    value: float,
    unit: str = typer.Option("count", help="Unit of the value"),
    tag: List[str] = typer.Option([], "--tag", "-t", help="key=value tag, repeatable"),
):
    """Record a metric point."""
    check_service_running()
    tags = {}
    for item in tag:
        key, sep, tag_value = item.partition("=")
        if not sep or not key:
            typer.echo(f"Invalid tag '{item}', expected key=value", err=True)
            raise typer.Exit(1)
        tags[key] = tag_value
    _print(_handle(requests.post(
        f"{API_URL}/metrics", json={"name": name, "value": value, "unit": unit, "tags": tags}
    )))

@app.command()
def evaluate():
    """Run one scaling evaluation immediately."""
    check_service_running()
    body = _handle(requests.post(f"{API_URL}/evaluate"))
    for decision in body.get("decisions", []):
        marker = "SCALE" if decision["should_scale"] else "-"
        typer.echo(
            f"{marker:<6} {decision['policy_id']}: {decision['current_instances']} -> "
            f"{decision['target_instances']} ({decision['reason']})"
        )

if __name__ == "__main__":
    app()
