"""
StormTail command-line interface.

Fits the gamma-GPD mixture to a column of a CSV file and optionally samples
its posterior.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import click
import pandas as pd

from .config import AnalysisConfig
from .errors import StormTailError


def _load_values(path: str, column: Optional[str]) -> pd.Series:
    frame = pd.read_csv(path)
    if column is None:
        numeric = frame.select_dtypes("number")
        if numeric.empty:
            raise click.BadParameter(f"{path} has no numeric column", param_hint="--column")
        return numeric.iloc[:, 0]
    if column not in frame.columns:
        raise click.BadParameter(
            f"column {column!r} not found in {path}; available: {', '.join(map(str, frame.columns))}",
            param_hint="--column",
        )
    return frame[column]


def _build_config(config_path: Optional[str], **overrides) -> AnalysisConfig:
    config = AnalysisConfig.from_json(config_path) if config_path else AnalysisConfig()
    data = config.to_dict()
    data.update({k: v for k, v in overrides.items() if v is not None})
    return AnalysisConfig.from_dict(data)


def _run(
    data_file: str,
    column: Optional[str],
    annual_rate: Optional[float],
    config_path: Optional[str],
    seed: Optional[int],
    sample: bool,
    accept_warning: bool = False,
    output: Optional[str] = None,
    **overrides,
) -> None:
    from .engine import analyze

    values = _load_values(data_file, column)
    try:
        config = _build_config(config_path, **overrides)
        result = analyze(
            values.to_numpy(dtype=float),
            annual_rate=annual_rate,
            config=config,
            seed=seed,
            sample=sample,
            accept_warning=accept_warning,
        )
    except StormTailError as e:
        raise click.ClickException(str(e))

    click.echo(result.summary())

    if output:
        if result.posterior is not None:
            result.posterior.to_frame().to_csv(output, index=False)
        elif result.chains is not None:
            result.chains.to_frame().to_csv(output, index=False)
        else:
            pd.DataFrame([result.fitted.as_dict()]).to_csv(output, index=False)
        click.echo(f"Wrote {Path(output)}")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log progress to stderr.")
def cli(verbose: bool) -> None:
    """StormTail - Gamma bulk + GPD tail extreme-value analysis."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


_common_options = [
    click.argument("data_file", type=click.Path(exists=True, dir_okay=False)),
    click.option("--column", default=None, help="CSV column holding the observations."),
    click.option("--offset", type=float, default=None, help="Baseline subtracted from the data."),
    click.option("--annual-rate", type=float, default=None, help="Events per year."),
    click.option("--phiu", default=None, help="'empirical', 'bulk' or a fixed tail fraction."),
    click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                 default=None, help="JSON file of AnalysisConfig fields."),
    click.option("--seed", type=int, default=None, help="Root random seed."),
    click.option("--output", type=click.Path(dir_okay=False), default=None,
                 help="CSV file for the estimates or posterior draws."),
]


def _with_common_options(func):
    for option in reversed(_common_options):
        func = option(func)
    return func


def _phiu_value(phiu: Optional[str]):
    if phiu is None:
        return None
    try:
        return float(phiu)
    except ValueError:
        return phiu


@cli.command()
@_with_common_options
def fit(data_file, column, offset, annual_rate, phiu, config_path, seed, output) -> None:
    """Maximum-likelihood fit and quantile check of DATA_FILE."""
    _run(
        data_file,
        column,
        annual_rate,
        config_path,
        seed,
        sample=False,
        output=output,
        data_offset=offset,
        phiu=_phiu_value(phiu),
    )


@cli.command()
@_with_common_options
@click.option("--chains", "n_chains", type=int, default=None, help="Number of chains.")
@click.option("--length", "chain_length", type=int, default=None, help="Iterations per chain.")
@click.option("--burnin", type=int, default=None, help="Leading iterations discarded.")
@click.option("--thin", type=int, default=None, help="Keep every n-th iterate.")
@click.option("--executor", type=click.Choice(["process", "thread"]), default=None)
@click.option("--accept-warning", is_flag=True, help="Combine chains despite a convergence warning.")
def sample(
    data_file,
    column,
    offset,
    annual_rate,
    phiu,
    config_path,
    seed,
    output,
    n_chains,
    chain_length,
    burnin,
    thin,
    executor,
    accept_warning,
) -> None:
    """Fit DATA_FILE, then sample the posterior with parallel Metropolis chains."""
    _run(
        data_file,
        column,
        annual_rate,
        config_path,
        seed,
        sample=True,
        accept_warning=accept_warning,
        output=output,
        data_offset=offset,
        phiu=_phiu_value(phiu),
        mcmc_n_chains=n_chains,
        mcmc_chain_length=chain_length,
        mcmc_burnin=burnin,
        mcmc_thin=thin,
        executor=executor,
    )


if __name__ == "__main__":
    cli()
