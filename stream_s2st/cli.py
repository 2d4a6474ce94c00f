"""Command-line interface for streaming speech translation.

Usage:
    stream-s2st generate input.wav output.wav --model path/to/model --tokenizer tokenizer.model
    stream-s2st info path/to/model
"""

import logging
from typing import Annotated, Optional

import torch
import typer
from rich.console import Console
from rich.table import Table

from .config import MAX_FRAMES, GenerationConfig
from .errors import StreamError
from .observer import CallbackObserver, LoggingObserver

app = typer.Typer(
    name="stream-s2st",
    help="Streaming speech-to-speech translation with a multistream model",
    no_args_is_help=True,
)
console = Console()
logger = logging.getLogger(__name__)


def resolve_device(device: Optional[str] = None) -> str:
    """Explicit device, else cuda -> mps -> cpu."""
    if device:
        return device
    if torch.cuda.is_available():
        return "cuda"
    if torch.backends.mps.is_available():
        return "mps"
    return "cpu"


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command()
def generate(
    input_path: Annotated[str, typer.Argument(help="Input audio file (any format soundfile reads)")],
    output_path: Annotated[str, typer.Argument(help="Output WAV file (mono, 24 kHz)")],
    model: Annotated[str, typer.Option("--model", "-m", help="Multistream model path or Hub ID")],
    tokenizer: Annotated[
        str, typer.Option("--tokenizer", "-t", help="Text tokenizer (SentencePiece .model or HF path)")
    ],
    mimi: Annotated[str, typer.Option(help="Mimi codec repo or path")] = "kyutai/mimi",
    seed: Annotated[int, typer.Option(help="Sampling seed")] = 299792458,
    cfg_alpha: Annotated[
        Optional[float], typer.Option(help="Classifier-free guidance weight (1.0 disables)")
    ] = None,
    device: Annotated[
        Optional[str], typer.Option(help="Device (cuda/mps/cpu). Auto-detected if not specified.")
    ] = None,
    max_frames: Annotated[int, typer.Option(help="Cap on processed frames")] = MAX_FRAMES,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Do not stream text")] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
):
    """Translate an audio file, streaming the transcript as it is generated."""
    from .orchestrator import Orchestrator

    setup_logging(verbose=verbose, quiet=quiet)
    torch.manual_seed(seed)
    device = resolve_device(device)
    logger.info(f"Using device: {device}")

    def print_fragment(fragment: str) -> None:
        console.print(fragment, end="", markup=False, highlight=False)

    observer = CallbackObserver(
        on_text=None if quiet else print_fragment,
        inner=LoggingObserver(),
    )

    try:
        config = GenerationConfig(seed=seed, cfg_alpha=cfg_alpha, max_frames=max_frames)
        orchestrator = Orchestrator.from_pretrained(
            model,
            tokenizer,
            mimi_repo=mimi,
            config=config,
            observer=observer,
            device=device,
        )
        result = orchestrator.run_file(input_path, output_path)
    except StreamError as e:
        if not quiet:
            console.print()
        logger.error(f"Generation failed: {e}")
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    if not quiet:
        console.print()
    console.print(f"\n[bold]Transcript:[/bold] {result.text}")
    console.print(
        f"Wrote [bold]{result.duration:.2f}s[/bold] of audio to {output_path} "
        f"({result.num_steps} steps, {result.elapsed:.2f}s)"
    )


@app.command()
def info(
    model: Annotated[str, typer.Argument(help="Multistream model path or Hub ID")],
):
    """Show the codebook layout and special tokens of a multistream model."""
    from .modules import MultistreamConfig

    try:
        config = MultistreamConfig.from_pretrained(model)
        stream_cfg = config.stream_config()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error: Could not load config from {model}: {e}[/red]")
        raise typer.Exit(code=1) from None
    except StreamError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None

    table = Table(title=f"Multistream config: {model}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")

    rows = [
        ("text_out_vocab_size", config.text_out_vocab_size),
        ("text_start_token", stream_cfg.text_start_token),
        ("audio_vocab_size", stream_cfg.audio_vocab_size),
        ("audio_pad_token", stream_cfg.audio_pad_token),
        ("generated_audio_codebooks", stream_cfg.generated_audio_codebooks),
        ("input_audio_codebooks", stream_cfg.input_audio_codebooks),
        ("acoustic_delay", stream_cfg.acoustic_delay),
        ("delays", " ".join(str(d) for d in stream_cfg.delays())),
        ("conditioners", ", ".join(sorted(config.conditioners)) or "-"),
    ]
    for name, value in rows:
        table.add_row(name, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
