import multiprocessing
import subprocess
import time
from typing import Annotated, Optional

import httpx
import typer
from uvicorn import Config, Server

from tfbucket.server.app import (
    app as server_app,
    config as server_config,
    start_server,
)


READY_MESSAGE = """\
terraform {{
  backend "http" {{
    address        = "{address}"
    lock_address   = "{address}"
    lock_method    = "LOCK"
    unlock_address = "{address}"
    unlock_method  = "UNLOCK"
  }}
}}
"""


app = typer.Typer(pretty_exceptions_enable=False, rich_markup_mode=None)

HostOption = Annotated[str, typer.Option(help="Host to bind the server to")]
PortOption = Annotated[int, typer.Option(help="Port to run the server on")]


def build_binding_message(state_path: str, host: str, port: int) -> str:
    address = f"http://{host}:{port}/{state_path.lstrip('/')}"
    return READY_MESSAGE.format(address=address)


@app.command()
def start(
    host: HostOption = server_config.host,
    port: PortOption = server_config.port,
) -> None:
    """Starts the server with the configuration file in the current directory."""
    start_server(host, port)


@app.command()
def print_bindings(
    state_path: Annotated[str, typer.Argument(help="Path of the state in the bucket")],
    host: HostOption = server_config.host,
    port: PortOption = server_config.port,
) -> None:
    """Prints the terraform backend configuration for the given state path."""
    print("In terraform backend configuration, use the following:\n")
    print(build_binding_message(state_path, host, port))


class UvicornServer(multiprocessing.Process):
    def __init__(self, config: Config):
        super().__init__()
        self.server = Server(config=config)
        self.config = config

    def stop(self):
        self.terminate()

    def run(self, *args, **kwargs):
        self.server.run()


def wait_until_ready(host: str, port: int, timeout: Optional[float] = 30) -> None:
    deadline = time.monotonic() + timeout if timeout is not None else None
    with httpx.Client() as client:
        while True:
            try:
                response = client.get(f"http://{host}:{port}/ready")
                response.raise_for_status()
                return

            except httpx.HTTPError:
                if deadline is not None and time.monotonic() > deadline:
                    raise typer.Abort(f"Server did not become ready within {timeout} seconds")

                time.sleep(0.2)


@app.command()
def wrap(
    verbose: Annotated[
        bool,
        typer.Option("-v", "--verbose", help="Print more details about the backend"),
    ] = False,
    host: HostOption = server_config.host,
    port: PortOption = server_config.port,
    args: list[str] = typer.Argument(help="Command to run"),
) -> None:
    """Runs a command while the server is running in the background.

    Its main purpose is to allow running terraform commands against the bucket without a long running server.

    Examples:

    $ tfbucket wrap -- terraform plan
    """
    instance = UvicornServer(
        config=Config(
            app=server_app,
            host=host,
            port=port,
            access_log=verbose,
            log_level="info" if verbose else "warning",
            timeout_graceful_shutdown=server_config.shutdown_grace_period,
        )
    )
    instance.start()
    try:
        wait_until_ready(host, port)
        result = subprocess.run(args)
    finally:
        instance.stop()

    raise typer.Exit(result.returncode)


def main() -> None:
    app()
