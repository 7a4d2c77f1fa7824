import typer
import requests
from dotenv import load_dotenv
import os
import json
import yaml
from typing import Dict, List, Optional

load_dotenv()

app = typer.Typer(name="slipway", help="Slipway control plane CLI")

# Default values for local development
SLIPWAY_HOST = os.getenv("SLIPWAY_HOST", "localhost")
SLIPWAY_PORT = os.getenv("SLIPWAY_PORT", "8000")

API_URL = os.getenv("SLIPWAY_API_URL", f"http://{SLIPWAY_HOST}:{SLIPWAY_PORT}")

# Deploys run the whole spawn sequence before responding
DEPLOY_TIMEOUT = 180
REQUEST_TIMEOUT = 30

def check_service_running():
    """Check if the Slipway controller is running and provide helpful error messages."""
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
        if response.status_code == 200:
            return True
    except requests.exceptions.ConnectionError:
        typer.echo("Slipway controller is not running.", err=True)
        typer.echo("", err=True)
        typer.echo("To start it:", err=True)
        typer.echo("   slipway-controller --host 0.0.0.0 --port 8000", err=True)
        raise typer.Exit(1)
    except requests.exceptions.Timeout:
        typer.echo("Slipway controller is not responding (timeout).", err=True)
        raise typer.Exit(1)
    except requests.exceptions.RequestException as e:
        typer.echo(f"Error connecting to Slipway: {e}", err=True)
        raise typer.Exit(1)

    return False

def _print_result(response: requests.Response):
    """Echo a JSON response, exiting non-zero on an error status."""
    try:
        body = response.json()
    except ValueError:
        body = {"detail": response.text}

    if response.status_code == 404:
        typer.echo(f"Not found: {body.get('detail', body)}", err=True)
        raise typer.Exit(1)
    if response.status_code >= 400:
        typer.echo(f"Error ({response.status_code}): {body.get('detail', body)}", err=True)
        raise typer.Exit(1)

    for warning in body.get("warnings", []) if isinstance(body, dict) else []:
        typer.echo(f"warning: {warning}", err=True)
    typer.echo(json.dumps(body, indent=2))

def _request(method: str, path: str, timeout: int = REQUEST_TIMEOUT, **kwargs):
    try:
        response = requests.request(method, f"{API_URL}{path}", timeout=timeout, **kwargs)
    except requests.exceptions.RequestException as e:
        typer.echo(f"Error: Unable to connect to API - {e}", err=True)
        raise typer.Exit(1)
    _print_result(response)

def _load_env_file(path: str) -> Dict[str, str]:
    if not os.path.exists(path):
        typer.echo(f"Env file '{path}' not found", err=True)
        raise typer.Exit(1)
    with open(path) as f:
        if path.endswith(('.yml', '.yaml')):
            data = yaml.safe_load(f) or {}
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        typer.echo(f"Env file '{path}' must contain a mapping", err=True)
        raise typer.Exit(1)
    return {str(key): str(value) for key, value in data.items()}

def parse_env(pairs: List[str]) -> Dict[str, str]:
    """Turn repeated KEY=VALUE options into a mapping."""
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            typer.echo(f"Invalid --env value '{pair}', expected KEY=VALUE", err=True)
            raise typer.Exit(1)
        env[key] = value
    return env

@app.command()
def deploy(
    app_id: int,
    instances: Optional[int] = typer.Option(None, "--instances", "-n", help="Instances to start (1-10)"),
    image: Optional[str] = typer.Option(None, "--image", help="Custom image to run instead of the built-in app"),
    env: List[str] = typer.Option([], "--env", "-e", help="Environment variable as KEY=VALUE, repeatable"),
    env_file: Optional[str] = typer.Option(None, "--env-file", help="YAML or JSON mapping of environment variables"),
):
    """Deploy (or redeploy) an app."""
    check_service_running()
    env_vars = _load_env_file(env_file) if env_file else {}
    env_vars.update(parse_env(env))

    payload = {"env_vars": env_vars}
    if instances is not None:
        payload["instances"] = instances
    if image:
        payload["image"] = image

    _request("POST", f"/apps/{app_id}/deploy", timeout=DEPLOY_TIMEOUT, json=payload)

@app.command()
def stop(app_id: int):
    """Stop the app."""
    check_service_running()
    _request("POST", f"/apps/{app_id}/stop", timeout=DEPLOY_TIMEOUT)

@app.command()
def containers(app_id: int):
    """List the app's containers."""
    check_service_running()
    _request("GET", f"/apps/{app_id}/containers")

@app.command()
def scale(app_id: int, instances: int):
    """Set the app's target instance count (applied on the next deploy)."""
    check_service_running()
    _request("POST", f"/apps/{app_id}/scale", json={"instances": instances})

@app.command("scale-up")
def scale_up(app_id: int, increment: int = typer.Option(1, "--by", help="Instances to add")):
    check_service_running()
    _request("POST", f"/apps/{app_id}/scale/up", params={"increment": increment})

@app.command("scale-down")
def scale_down(app_id: int, decrement: int = typer.Option(1, "--by", help="Instances to remove")):
    check_service_running()
    _request("POST", f"/apps/{app_id}/scale/down", params={"decrement": decrement})

@app.command()
def metrics(app_id: int):
    """Show instance count, scaling policy and utilization."""
    check_service_running()
    _request("GET", f"/apps/{app_id}/scale")

@app.command()
def proxy(app_id: int):
    """Regenerate the app's nginx route and reload nginx."""
    check_service_running()
    _request("POST", f"/apps/{app_id}/proxy")

@app.command("proxy-status")
def proxy_status(app_id: int):
    check_service_running()
    _request("GET", f"/apps/{app_id}/proxy/status")

@app.command()
def info():
    """Show Slipway controller status."""
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
    except requests.exceptions.ConnectionError:
        typer.echo("Slipway Controller: Not running")
        typer.echo("")
        typer.echo("To start: slipway-controller --host 0.0.0.0 --port 8000")
        return
    except requests.exceptions.RequestException as e:
        typer.echo(f"Error checking status: {e}")
        return

    if response.status_code == 200:
        health = response.json()
        typer.echo("Slipway Controller: Running")
        typer.echo(f"   API: {API_URL}")
        typer.echo(f"   Version: {health.get('version', 'unknown')}")
    else:
        typer.echo("Slipway Controller: Not healthy")

if __name__ == "__main__":
    app()
