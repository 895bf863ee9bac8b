import functools
from typing import Any, Callable, Optional

import click

from capifleet._cogs.configs import configuration
from capifleet._core.actions import loggers
from capifleet._core.reactor import running
from capifleet.fleet import operator


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: Optional[bool] = None,
                log_refkey: Optional[str] = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(prog_name='capifleet')
@click.group(name='capifleet', context_settings=dict(
    auto_envvar_prefix='CAPIFLEET',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-L', '--server-endpoint', type=str, default=None,
              help="Where to serve the health, metrics & diagnostics; `none` to disable.")
@click.option('--config-name', type=str, default=None,
              help="The name of the FleetAddonConfig object.")
@click.option('--fleet-namespace', type=str, default=None,
              help="The namespace where Fleet is installed.")
def run(
        server_endpoint: Optional[str],
        config_name: Optional[str],
        fleet_namespace: Optional[str],
) -> None:
    """ Start the operator and reconcile the clusters until stopped. """
    settings = configuration.OperatorSettings()
    if server_endpoint is not None:
        settings.server.endpoint = None if server_endpoint.lower() == 'none' else server_endpoint
    if config_name is not None:
        settings.fleet.config_name = config_name
    if fleet_namespace is not None:
        settings.fleet.system_namespace = fleet_namespace
    return running.run(roots=operator.roots, settings=settings)
