"""CLI entry point for hostbackup."""

import click

from hostbackup import __version__
from hostbackup.backup.executor import execute_backup
from hostbackup.config import Config, ConfigError, resolve_configuration

EPILOG = """\b
Examples:
  Backup to local filesystem without using encryption
     hostbackup --no-encryption --local-only
  Backup without compression
     hostbackup --no-compression
  Backup using lzma compression
     hostbackup --lzma
"""


def _select_compression(ctx, param, value):
    # Parameters are processed in command-line order, so the last selector wins
    if value:
        ctx.meta['compression_method'] = param.name
    return value


def compression_option(*names, method, help_text):
    return click.option(
        *names, method, is_flag=True, expose_value=False,
        callback=_select_compression, help=help_text,
    )


@click.command(epilog=EPILOG, context_settings={'help_option_names': ['-h', '--help']})
@compression_option('--gzip', method='gz', help_text='Use gzip compression (default).')
@compression_option('--bzip', '--bzip2', method='bz2', help_text='Use bzip2 compression.')
@compression_option('--xz', method='xz', help_text='Use xz compression.')
@compression_option('--lzma', method='lzma', help_text='Use lzma compression.')
@click.option('--no-compression', is_flag=True, help='Do not compress, just archive.')
@click.option('--local-only', is_flag=True, help='Only back up locally.')
@click.option('--no-ascii', is_flag=True, help='Do not ASCII-armor encrypted files.')
@click.option('--no-encryption', is_flag=True, help='Do not use GPG encryption.')
@click.option('--no-application', is_flag=True, help='Do not use application plugins.')
@click.option('--no-color', '--no-colour', 'no_color', is_flag=True, help='Do not use colored output.')
@click.version_option(version=__version__, prog_name='hostbackup')
@click.pass_context
def cli(ctx, no_compression, local_only, no_ascii, no_encryption, no_application, no_color):
    """Back up directories to local and remote storage, optionally encrypted."""
    try:
        config = resolve_configuration(
            Config,
            compression=False if no_compression else None,
            compression_method=ctx.meta.get('compression_method'),
            remote=False if local_only else None,
            ascii_armor=False if no_ascii else None,
            encryption=False if no_encryption else None,
            application=False if no_application else None,
            color=False if no_color else None,
        )
    except ConfigError as e:
        # Logging is not configured yet, so format the line like ConsoleFormatter
        tag = '[FATAL]' if no_color else click.style('[FATAL]', fg='magenta', bold=True)
        click.echo(f"{tag}   {e}", err=True)
        ctx.exit(1)

    ctx.exit(execute_backup(config))


if __name__ == '__main__':
    cli()
