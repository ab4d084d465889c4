"""Command-line interface for fragbias.

Commands:
    fit: Fit bias models per sample on single-isoform training genes
    estimate: Estimate bias-corrected isoform abundances
    gc-table: Export a GC-bias probability table from a fitted model

Example:
    $ fragbias --help
    $ fragbias fit -a genes.gff3 -f genome.fa -b s1.bam -b s2.bam -o fits.h5
    $ fragbias estimate -a genes.gff3 -f genome.fa -b s1.bam --fits fits.h5 -o results/
    $ fragbias gc-table --fits fits.h5 --sample s1 --model gc -o gc_bias.tsv
"""

from __future__ import annotations

from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

# Initialize rich console for pretty output
console = Console()


@click.group()
@click.version_option(prog_name="fragbias")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.option("-q", "--quiet", is_flag=True, help="Suppress non-error output.")
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Write a DEBUG log to this file.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, quiet: bool, log_file: Path | None) -> None:
    """fragbias: fragment bias models for RNA-seq isoform quantification.

    Fits GC, position, fragment-length and read-start bias models on
    single-isoform genes and uses them to estimate isoform abundances.
    """
    from fragbias.utils.logging import setup_logging

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    setup_logging(verbosity=0 if quiet else (2 if verbose else 1), log_file=log_file)


# =============================================================================
# Helpers
# =============================================================================


def _samples(bams: tuple[Path, ...], sample_ids: tuple[str, ...]) -> list[tuple[str, Path]]:
    """Pair BAM files with sample ids (BAM file stem by default)."""
    if sample_ids and len(sample_ids) != len(bams):
        raise click.BadParameter(
            f"{len(sample_ids)} sample ids given for {len(bams)} BAM files",
            param_hint="--sample-id",
        )
    names = list(sample_ids) if sample_ids else [b.name.removesuffix(".bam") for b in bams]
    if len(set(names)) != len(names):
        raise click.BadParameter(f"Duplicate sample ids: {names}", param_hint="--sample-id")
    return list(zip(names, bams))


def _read_ids(path: Path | None) -> list[str] | None:
    if path is None:
        return None
    with open(path) as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]


def _load_config(config_path: Path | None, overrides: dict):
    from fragbias.config import Config

    config = Config.load(config_path)
    for key, value in overrides.items():
        if value is not None:
            section, attr = key.split(".")
            setattr(getattr(config, section), attr, value)
    return config.validate()


def _print_failures(failures: list) -> None:
    if not failures:
        return
    console.print(f"[yellow]{len(failures)} unit(s) failed:[/yellow]")
    for failure in failures[:20]:
        unit = "/".join(p for p in (failure.sample, failure.model, failure.unit) if p)
        console.print(f"  [yellow]{failure.stage}[/yellow] {unit}: {failure.error}")
    if len(failures) > 20:
        console.print(f"  ... and {len(failures) - 20} more")


# =============================================================================
# fit command
# =============================================================================


@main.command()
@click.option(
    "-a",
    "--annotation",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Transcript annotation (GFF3 or GTF).",
)
@click.option(
    "-f",
    "--genome",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Reference genome FASTA file.",
)
@click.option(
    "-b",
    "--bam",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    required=True,
    help="Indexed paired-end BAM file, one per sample. Repeatable.",
)
@click.option("--sample-id", multiple=True, help="Sample id per BAM (default: BAM name).")
@click.option(
    "--genes",
    type=click.Path(exists=True, path_type=Path),
    help="Training gene ids, one per line (default: all single-isoform genes).",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="YAML configuration file.",
)
@click.option("--read-length", type=int, help="Override read length.")
@click.option("--min-size", type=int, help="Override minimum fragment length.")
@click.option("--max-size", type=int, help="Override maximum fragment length.")
@click.option("-j", "--threads", type=int, help="Parallel workers.")
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    required=True,
    help="Output HDF5 file with fitted parameters.",
)
@click.option(
    "--coefficients",
    type=click.Path(path_type=Path),
    help="Output TSV with coefficient summaries of every model.",
)
@click.pass_context
def fit(
    ctx: click.Context,
    annotation: Path,
    genome: Path,
    bam: tuple[Path, ...],
    sample_id: tuple[str, ...],
    genes: Path | None,
    config_path: Path | None,
    read_length: int | None,
    min_size: int | None,
    max_size: int | None,
    threads: int | None,
    output: Path,
    coefficients: Path | None,
) -> None:
    """Fit bias models for each sample.

    Training uses single-isoform genes so that every observed fragment is
    attributable to one transcript.

    Example:

        fragbias fit -a genes.gff3 -f genome.fa -b s1.bam -b s2.bam -o fits.h5
    """
    import logging

    from fragbias.core.fit import summary_records
    from fragbias.core.pipeline import build_fragment_tables, fit_samples
    from fragbias.io.bam import FragmentCounter
    from fragbias.io.fasta import GenomeAccessor
    from fragbias.io.gff import load_annotation
    from fragbias.io.hdf5 import save_fit_params
    from fragbias.utils.logging import ProgressLogger

    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)
    logger = logging.getLogger("fragbias.cli")

    samples = _samples(bam, sample_id)

    try:
        config = _load_config(
            config_path,
            {
                "enumeration.read_length": read_length,
                "enumeration.min_size": min_size,
                "enumeration.max_size": max_size,
                "parallel.max_workers": threads,
            },
        )

        if not quiet:
            console.print(f"[blue]Annotation:[/blue] {annotation}")
            console.print(f"[blue]Genome:[/blue] {genome}")
            console.print(f"[blue]Samples:[/blue] {len(samples)}")
            for name, path in samples:
                console.print(f"  - {name}: {path}")
            console.print(f"[blue]Models:[/blue] {', '.join(m.name for m in config.fit.models)}")

        index = load_annotation(annotation)
        training_genes = _read_ids(genes) or index.single_isoform_genes()
        exon_sets = []
        for gene in training_genes:
            if gene not in index.gene_to_transcripts:
                logger.warning(f"Training gene {gene} not in annotation")
                continue
            isoforms = index.isoforms(gene)
            if len(isoforms) != 1:
                logger.warning(f"Training gene {gene} has {len(isoforms)} isoforms, skipped")
                continue
            exon_sets.append(isoforms[0])

        if not quiet:
            console.print(f"[dim]Enumerating fragment types of {len(exon_sets)} genes...[/dim]")
        with GenomeAccessor(genome) as accessor:
            tables, failures = build_fragment_tables(exon_sets, accessor, config)
        training = [t for t in tables.values() if not t.is_empty]
        if not training:
            console.print("[red]Error:[/red] No training gene admits any fragment type")
            raise SystemExit(1)

        sample_counts = {}
        for name, path in samples:
            progress = ProgressLogger(logger, len(training), 500, f"Counting {name}")
            with FragmentCounter(path) as counter:
                counts = []
                for table in training:
                    counts.append(table.counts_from(counter.count_gene([table.exon_set])))
                    progress.update()
            progress.finish()
            sample_counts[name] = counts

        if not quiet:
            console.print("[dim]Fitting bias models...[/dim]")
        fits, fit_failures = fit_samples(config, training, sample_counts)
        failures.extend(fit_failures)

        if output.exists():
            output.unlink()
        for params in fits.values():
            save_fit_params(params, output)

        if coefficients:
            with open(coefficients, "w") as f:
                f.write("sample\tmodel\tterm\testimate\tstd_error\tz_value\n")
                for params in fits.values():
                    for row in summary_records(params):
                        f.write(
                            f"{row['sample']}\t{row['model']}\t{row['term']}\t"
                            f"{row['estimate']:.6g}\t{row['std_error']:.6g}\t{row['z_value']:.6g}\n"
                        )
            if not quiet:
                console.print(f"[green]Wrote coefficients:[/green] {coefficients}")

        if not quiet:
            table = Table(title="Fitted models")
            table.add_column("Sample")
            table.add_column("Fragments", justify="right")
            table.add_column("Models")
            for name, _ in samples:
                n_fragments = sum(float(c.sum()) for c in sample_counts[name])
                fitted = ", ".join(fits[name].models) if name in fits else "-"
                table.add_row(name, f"{n_fragments:,.0f}", fitted)
            console.print(table)
            _print_failures(failures)

        if not fits:
            console.print("[red]Error:[/red] No sample could be fitted")
            raise SystemExit(1)
        if not quiet:
            console.print(f"[green]Wrote fit parameters:[/green] {output}")

    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if verbose:
            import traceback
            traceback.print_exc()
        raise SystemExit(1)


# =============================================================================
# estimate command
# =============================================================================


@main.command()
@click.option(
    "-a",
    "--annotation",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Transcript annotation (GFF3 or GTF).",
)
@click.option(
    "-f",
    "--genome",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Reference genome FASTA file.",
)
@click.option(
    "-b",
    "--bam",
    type=click.Path(exists=True, path_type=Path),
    multiple=True,
    required=True,
    help="Indexed paired-end BAM file, one per sample. Repeatable.",
)
@click.option("--sample-id", multiple=True, help="Sample id per BAM (default: BAM name).")
@click.option(
    "--fits",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="HDF5 file written by 'fragbias fit'.",
)
@click.option(
    "-m",
    "--models",
    help="Comma-separated model names (default: every model fitted for all samples).",
)
@click.option(
    "--genes",
    type=click.Path(exists=True, path_type=Path),
    help="Gene ids to estimate, one per line (default: all genes).",
)
@click.option(
    "--library-size",
    type=click.Choice(["bam", "config"]),
    default="bam",
    show_default=True,
    help="Library size from BAM index statistics or from the configuration.",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="YAML configuration file.",
)
@click.option("-j", "--threads", type=int, help="Parallel workers.")
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Output directory.",
)
@click.pass_context
def estimate(
    ctx: click.Context,
    annotation: Path,
    genome: Path,
    bam: tuple[Path, ...],
    sample_id: tuple[str, ...],
    fits: Path,
    models: str | None,
    genes: Path | None,
    library_size: str,
    config_path: Path | None,
    threads: int | None,
    output: Path,
) -> None:
    """Estimate bias-corrected isoform abundances.

    Writes one isoform x sample matrix per model (abundance_<model>.tsv)
    and a long table of theta and lambda per gene, sample and model.
    Read length, fragment lengths and GC-stretch columns are taken from
    the fits; all samples must agree.

    Example:

        fragbias estimate -a genes.gff3 -f genome.fa -b s1.bam --fits fits.h5 -o out/
    """
    import logging

    import attrs

    from fragbias.core.aggregate import write_matrix_tsv
    from fragbias.core.pipeline import (
        build_fragment_tables,
        enumeration_from_fits,
        estimate_abundances,
        group_by_gene,
    )
    from fragbias.io.bam import FragmentCounter
    from fragbias.io.fasta import GenomeAccessor
    from fragbias.io.gff import load_annotation
    from fragbias.io.hdf5 import list_samples, load_fit_params
    from fragbias.utils.logging import ProgressLogger

    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)
    logger = logging.getLogger("fragbias.cli")

    samples = _samples(bam, sample_id)

    try:
        config = _load_config(config_path, {"parallel.max_workers": threads})

        available = set(list_samples(fits))
        missing = [name for name, _ in samples if name not in available]
        if missing:
            console.print(f"[red]Error:[/red] No fit parameters for samples: {', '.join(missing)}")
            raise SystemExit(1)
        params = {name: load_fit_params(fits, name) for name, _ in samples}

        if models:
            model_names = [m.strip() for m in models.split(",") if m.strip()]
        else:
            common = set.intersection(*(set(p.models) for p in params.values()))
            model_names = [m for m in next(iter(params.values())).models if m in common]
        if not model_names:
            console.print("[red]Error:[/red] No model to evaluate")
            raise SystemExit(1)
        fitted = set().union(*(p.models for p in params.values()))
        unknown = [m for m in model_names if m not in fitted]
        if unknown:
            console.print(f"[red]Error:[/red] No sample has a fitted model named {', '.join(unknown)}")
            raise SystemExit(1)
        config = attrs.evolve(
            config, enumeration=enumeration_from_fits(params, config.enumeration)
        )

        index = load_annotation(annotation)
        gene_ids = _read_ids(genes) or index.gene_ids
        exon_sets = [e for g in gene_ids if g in index.gene_to_transcripts for e in index.isoforms(g)]

        if not quiet:
            console.print(f"[blue]Genes:[/blue] {len(gene_ids):,}")
            console.print(f"[blue]Samples:[/blue] {', '.join(params)}")
            console.print(f"[blue]Models:[/blue] {', '.join(model_names)}")
            console.print("[dim]Enumerating fragment types...[/dim]")

        with GenomeAccessor(genome) as accessor:
            tables, failures = build_fragment_tables(exon_sets, accessor, config)
        gene_tables = group_by_gene(tables)

        observed: dict[str, dict] = {}
        library_sizes: dict[str, float] = {}
        for name, path in samples:
            progress = ProgressLogger(logger, len(gene_tables), 500, f"Counting {name}")
            with FragmentCounter(path) as counter:
                observed[name] = {}
                for gene, isoform_tables in gene_tables.items():
                    observed[name][gene] = counter.count_gene([t.exon_set for t in isoform_tables])
                    progress.update()
                if library_size == "bam":
                    library_sizes[name] = counter.library_size()
            progress.finish()

        if not quiet:
            console.print("[dim]Estimating abundances...[/dim]")
        results = estimate_abundances(
            config, gene_tables, params, observed, model_names, library_sizes
        )
        failures.extend(results.failures)

        output.mkdir(parents=True, exist_ok=True)
        aggregator = results.aggregator()
        for model in aggregator.models:
            matrix_path = output / f"abundance_{model}.tsv"
            write_matrix_tsv(aggregator.matrix(model), matrix_path)
            if not quiet:
                console.print(f"[green]Wrote matrix:[/green] {matrix_path}")

        long_path = output / "estimates.tsv"
        with open(long_path, "w") as f:
            f.write("gene_id\ttranscript_id\tsample\tmodel\ttheta\tlambda\n")
            for row in results.records():
                f.write(
                    f"{row['gene_id']}\t{row['transcript_id']}\t{row['sample']}\t"
                    f"{row['model']}\t{row['theta']:.6g}\t{row['lambda']:.6g}\n"
                )

        if not quiet:
            n_ambiguous = sum(1 for r in results if r.ambiguous)
            console.print("")
            console.print("[bold]Estimation Summary:[/bold]")
            console.print(f"  Genes:                   {len(gene_tables):,}")
            console.print(f"  Results:                 {len(results):,}")
            console.print(f"  Indistinguishable sets:  {n_ambiguous:,}")
            _print_failures(failures)
            console.print(f"[green]Wrote estimates:[/green] {long_path}")

    except SystemExit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if verbose:
            import traceback
            traceback.print_exc()
        raise SystemExit(1)


# =============================================================================
# gc-table command
# =============================================================================


@main.command("gc-table")
@click.option(
    "--fits",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="HDF5 file written by 'fragbias fit'.",
)
@click.option("--sample", required=True, help="Sample id.")
@click.option("--model", default="gc", show_default=True, help="Model with a GC spline term.")
@click.option("--points", default=101, show_default=True, help="Grid points over 0-100% GC.")
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    required=True,
    help="Output TSV (gc_percent, probability).",
)
@click.pass_context
def gc_table(
    ctx: click.Context,
    fits: Path,
    sample: str,
    model: str,
    points: int,
    output: Path,
) -> None:
    """Export relative fragment probability by GC content.

    The table is the exponentiated GC spline of a fitted model, scaled so
    that its maximum is 1, and can drive read simulators.

    Example:

        fragbias gc-table --fits fits.h5 --sample s1 --model gc -o gc_bias.tsv
    """
    from fragbias.core.aggregate import gc_bias_table, write_gc_table
    from fragbias.io.hdf5 import load_fit_params

    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)

    try:
        params = load_fit_params(fits, sample)
        percent, probability = gc_bias_table(params.get_model(model), n_points=points)
        write_gc_table(percent, probability, output)
        if not quiet:
            peak = percent[probability.argmax()]
            console.print(f"[blue]Peak GC:[/blue] {peak:g}%")
            console.print(f"[green]Wrote GC table:[/green] {output}")
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        if verbose:
            import traceback
            traceback.print_exc()
        raise SystemExit(1)


if __name__ == "__main__":
    main()
