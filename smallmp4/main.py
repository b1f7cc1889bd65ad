import typer
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table
from smallmp4.config.loader import load_config, DEFAULT_CONFIG_PATH
from smallmp4.config.models import AppConfig
from smallmp4.domain.capabilities import HardwareCapabilities
from smallmp4.domain.encoders import HardwareEncoderKind, EncoderPreset, RateControlMode
from smallmp4.domain.errors import CompressionError
from smallmp4.domain.estimator import SizeEstimator
from smallmp4.domain.fallback import FallbackState
from smallmp4.domain.models import CompressionSettings, parse_target_size
from smallmp4.infrastructure.event_bus import EventBus
from smallmp4.infrastructure.ffmpeg import FFmpegAdapter
from smallmp4.infrastructure.ffprobe import FFprobeAdapter
from smallmp4.infrastructure.hardware import HardwareDetector
from smallmp4.infrastructure.logging import setup_logging
from smallmp4.pipeline.orchestrator import Orchestrator
from smallmp4.ui.manager import UIManager
from smallmp4.ui.progress import ProgressDisplay, format_eta
from smallmp4.ui.state import UIState

app = typer.Typer(help="small-mp4 - compress videos to a target file size")
console = Console()


def _detect(config: AppConfig) -> HardwareCapabilities:
    if config.general.force_software:
        return HardwareCapabilities.software_only()
    detector = HardwareDetector(config.tools.ffmpeg, config.tools.probe_timeout_seconds)
    return detector.detect()


def _parse_size(size: Optional[str]) -> Optional[float]:
    if size is None:
        return None
    try:
        return parse_target_size(size)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@app.command()
def compress(
    input_file: Path = typer.Argument(..., help="Video file to compress"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output path (default: <name>_compressed.mp4)"),
    size: Optional[str] = typer.Option(None, "--size", "-s", help="Target size, e.g. 10mb, 1gb"),
    encoder: Optional[HardwareEncoderKind] = typer.Option(None, "--encoder", "-e", help="Encoder to use"),
    preset: Optional[EncoderPreset] = typer.Option(None, "--preset", help="Speed/quality preset"),
    quality: Optional[RateControlMode] = typer.Option(None, "--quality", help="Rate control mode"),
    device: Optional[int] = typer.Option(None, "--device", help="CUDA device index"),
    force_software: bool = typer.Option(False, "--force-software", help="Never use hardware encoders"),
    memory_opt: bool = typer.Option(False, "--memory-opt", help="Reduce encoder memory usage"),
    compatibility: Optional[bool] = typer.Option(None, "--compatibility/--no-compatibility", help="Force H.264 output"),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Compress a video so the result fits the target size."""
    if not input_file.exists():
        typer.secho(f"Error: File {input_file} does not exist.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    try:
        config = load_config(config_path)
        # Apply CLI overrides
        target_mb = _parse_size(size)
        if target_mb is not None: config.general.target_mb = target_mb
        if encoder is not None: config.general.encoder = encoder
        if preset is not None: config.general.preset = preset
        if quality is not None: config.general.quality_mode = quality
        if device is not None: config.general.device_id = device
        if force_software: config.general.force_software = True
        if memory_opt: config.general.memory_optimization = True
        if compatibility is not None: config.general.compatibility_mode = compatibility
        if debug: config.general.debug = True

        logger = setup_logging(config.general.log_file, debug=config.general.debug)
        logger.info(f"small-mp4 started: input={input_file}, target={config.general.target_mb} MB")

        capabilities = _detect(config)
        settings = CompressionSettings.from_config(config.general, capabilities)

        bus = EventBus()
        ui_state = UIState()
        UIManager(bus, ui_state)

        orchestrator = Orchestrator(
            event_bus=bus,
            ffprobe_adapter=FFprobeAdapter(config.tools.ffprobe, config.tools.probe_timeout_seconds),
            ffmpeg_adapter=FFmpegAdapter(bus, config.tools.ffmpeg),
            capabilities=capabilities,
            fallback=FallbackState.from_capabilities(capabilities),
        )

        with ProgressDisplay(ui_state):
            result = orchestrator.compress(input_file, settings, output)

        console.print(f"[green]{result.summary()}")
        if result.exceeded_target:
            console.print(f"[yellow]Output is {result.output_size_mb:.2f} MB, above the {result.target_mb} MB target")

    except KeyboardInterrupt:
        typer.echo("\nInterrupted by user")
        raise typer.Exit(code=130)

    except CompressionError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def estimate(
    input_file: Path = typer.Argument(..., help="Video file to analyse"),
    size: Optional[str] = typer.Option(None, "--size", "-s", help="Target size, e.g. 10mb, 1gb"),
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
):
    """Show the bitrate, quality and time a compression would use, without encoding."""
    try:
        config = load_config(config_path)
        target_mb = _parse_size(size)
        if target_mb is not None: config.general.target_mb = target_mb

        metadata = FFprobeAdapter(config.tools.ffprobe, config.tools.probe_timeout_seconds).probe(input_file)
        capabilities = _detect(config)
        settings = CompressionSettings.from_config(config.general, capabilities)
        estimator = SizeEstimator()
        result = estimator.estimate(metadata, settings)
    except CompressionError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    table = Table(title=f"Estimate for {input_file.name}", show_header=False)
    table.add_row("Source", f"{metadata.width}x{metadata.height} @ {metadata.fps:.2f} fps, {metadata.duration_seconds:.1f}s")
    table.add_row("Target size", f"{result.target_size_mb:g} MB")
    table.add_row("Encoder", settings.encoder.display_name)
    table.add_row("Video bitrate", f"{result.estimated_bitrate_kbps} kbps")
    table.add_row(
        "Recommended for encoder",
        f"{estimator.recommend_bitrate(metadata, settings.target_mb, settings.encoder)} kbps",
    )
    table.add_row("Quality score", f"{result.quality_score:.2f}")
    table.add_row("Encoding time", format_eta(result.estimated_time_seconds))
    table.add_row("Confidence", f"{result.confidence:.0%}")
    console.print(table)


@app.command("list-hw")
def list_hw(
    config_path: Optional[Path] = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config"),
):
    """List detected hardware encoders and devices."""
    config = load_config(config_path)
    detector = HardwareDetector(config.tools.ffmpeg, config.tools.probe_timeout_seconds)
    capabilities = detector.detect()

    if capabilities.devices:
        devices = Table(title="Devices")
        devices.add_column("ID")
        devices.add_column("Name")
        devices.add_column("Vendor")
        devices.add_column("Compute")
        devices.add_column("Memory")
        devices.add_column("Sessions")
        for d in capabilities.devices:
            cc = f"{d.compute_capability[0]}.{d.compute_capability[1]}" if d.compute_capability != (0, 0) else "-"
            memory = f"{d.memory_mb} MB" if d.memory_mb else "-"
            devices.add_row(str(d.id), d.name, d.vendor.value, cc, memory, str(d.max_concurrent_sessions))
        console.print(devices)

    encoders = Table(title="Encoders")
    encoders.add_column("Encoder")
    encoders.add_column("Name")
    encoders.add_column("Speed")
    for kind in capabilities.available_encoders:
        marker = " (preferred)" if kind == capabilities.preferred_encoder else ""
        encoders.add_row(kind.value, f"{kind.display_name}{marker}", f"{capabilities.speed_improvement(kind):.1f}x")
    console.print(encoders)

    for result in detector.results:
        if result.error:
            console.print(f"[yellow]Probe {result.probe} failed: {result.error}")

    console.print(f"Estimated memory usage: {capabilities.memory_usage_mb} MB")
    console.print(f"Estimated speed: {capabilities.encoding_speed_multiplier:.1f}x real-time software")


if __name__ == "__main__":
    app()
