import typer
from pathlib import Path
import yaml
import polars as pl
import pandas as pd
from importlib.resources import files
from isoflux.main import run_pipeline
from isoflux.workflow.pipeline import PRESETS, default_variants

# cap dataframe display sizes for any explicit prints/logs
pl.Config.set_tbl_rows(20)
pl.Config.set_tbl_cols(20)
pl.Config.set_tbl_width_chars(160)
pd.set_option("display.max_rows", 20)
pd.set_option("display.max_columns", 20)
pd.set_option("display.width", 160)

app = typer.Typer(help="isoflux: benchmark normalization, summarization and testing of isobaric-labeling data")


@app.command()
def init(path: Path = Path("isoflux_config.yaml")):
    """
    Generate a config scaffold (basic template) at given path.
    """
    default_yaml = files("isoflux.templates").joinpath("user_template.yaml").read_text()

    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., help="Path to YAML config file"),
):
    """
    Run every configured pipeline variant and score it against the spike-ins.
    """
    config_data = yaml.safe_load(config.read_text())

    run_pipeline(config=config_data)


@app.command()
def variants(
    family: str = typer.Option("defaults", help=f"One of: {', '.join(PRESETS)}"),
):
    """
    Print a preset variant grid as YAML, ready to paste under `pipeline.variants`.
    """
    grid = [v.to_dict() for v in default_variants(family)]
    typer.echo(yaml.safe_dump({"variants": grid}, sort_keys=False))


if __name__ == "__main__":
    app()
