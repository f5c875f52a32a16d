import logging
from pathlib import Path
from typing import Optional

import typer

from cameras import StandardCamera, StandardCameraRadial
from config import UNSET, OptionsSIFT
from features import KorniaSiftContext, OpenCVSiftContext, detect_sift
from sfm_data import Dataset

app = typer.Typer()

BACKENDS = {"kornia": KorniaSiftContext, "opencv": OpenCVSiftContext}


@app.command()
def detect(
    img_dir: Path = typer.Argument(..., help="Directory with the input images", exists=True, file_okay=False),
    ext: str = typer.Option("jpg", "--ext", "-e", help="Image file extension"),
    backend: str = typer.Option("kornia", "--backend", "-b", help="SIFT implementation: 'kornia' (GPU) or 'opencv'"),
    max_working_dimension: int = typer.Option(
        UNSET, "--max-dim", "-d", help="Maximum image dimension used for detection (-1 = no cap)"
    ),
    first_octave: int = typer.Option(-1, "--first-octave", help="Index of the first octave"),
    max_octaves: int = typer.Option(UNSET, "--max-octaves", help="Maximum number of octaves (-1 = automatic)"),
    dog_levels: int = typer.Option(UNSET, "--dog-levels", help="DoG levels per octave (-1 = default)"),
    dog_thresh: float = typer.Option(UNSET, "--dog-thresh", help="DoG threshold (-1 = default)"),
    edge_thresh: float = typer.Option(UNSET, "--edge-thresh", help="Edge threshold (-1 = default)"),
    upright: bool = typer.Option(False, "--upright/--oriented", help="Detect a single fixed orientation per feature"),
    radial: bool = typer.Option(True, "--radial/--no-radial", help="Use cameras with radial distortion"),
    report: Optional[Path] = typer.Option(None, "--report", "-r", help="Write the detection options to this file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log per-image details"),
):
    """Create a dataset from a directory of images and detect SIFT features in all of them."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if backend not in BACKENDS:
        typer.echo(f"Error: backend must be one of {list(BACKENDS)}, got '{backend}'", err=True)
        raise typer.Exit(code=1)

    opt = OptionsSIFT(
        max_working_dimension=max_working_dimension,
        first_octave=first_octave,
        max_octaves=max_octaves,
        dog_levels_in_an_octave=dog_levels,
        dog_thresh=dog_thresh,
        edge_thresh=edge_thresh,
        detect_upright_sift=upright,
        verbosity_level=2 if verbose else 1,
    )

    dataset = Dataset(img_dir)
    try:
        dataset.add_cameras_from_dir(ext, StandardCameraRadial if radial else StandardCamera)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Detecting SIFT features ({backend}) in {dataset.num_cams} images from {img_dir}...")

    def progress(_, done: int):
        typer.echo(f"  [{done + 1}/{dataset.num_cams}] {Path(dataset.cam(done).img_filename).name}")

    n_detected = detect_sift(opt, dataset.cams, progress, None, BACKENDS[backend])

    for idx, cam in enumerate(dataset.cams):
        typer.echo(f"{idx}:{Path(cam.img_filename).name} ({cam.img_width}x{cam.img_height}): {cam.num_keys} keypoints")

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        with open(report, "w") as f:
            opt.write(f)
        typer.echo(f"Saved detection options to {report}")

    if n_detected < dataset.num_cams:
        typer.echo(f"Features detected in {n_detected}/{dataset.num_cams} images.", err=True)
        raise typer.Exit(code=1)
    typer.echo("✓ Done!")


if __name__ == "__main__":
    app()
