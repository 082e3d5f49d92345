#!/usr/bin/env python3

import argparse
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import sys
from itertools import count
from types import FrameType
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence

ENCODER = "ffmpeg"
DEFAULT_SUFFIX = "x265"
# hevc_nvenc for NVIDIA hardware
# hevc_videotoolbox for macOS hardware
# libx265 for software
DEFAULT_VCODEC = "hevc_nvenc"
# aac for the built-in ffmpeg encoder
# libfdk_aac for better quality (needs ffmpeg built with --enable-libfdk-aac)
# aac_at for Apple devices
DEFAULT_ACODEC = "libfdk_aac"
AUDIO_BITRATE = "384k"

EXIT_USAGE = 1
EXIT_INTERRUPTED = 130

FFMPEG_GLOBAL_FLAGS = ["-hide_banner", "-loglevel", "info", "-y"]
CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_DIGITS_RE = re.compile(r"[0-9]+")
_BITRATE_RE = re.compile(r"[0-9]+[kKmM]")

_HELP_EPILOG = """\
examples:
  vconvert movie.mkv 2500k
  vconvert movie.mkv 2500         # auto -> 2500k
  vconvert -movie.mkv -2500       # tolerated legacy style
  vconvert -n movie.mkv 2M        # dry-run only prints the ffmpeg command
  VC_SUFFIX=SMALL vconvert movie.mkv 1200k
  VC_VCODEC=libx265 VC_ACODEC=aac VC_EXTRA='-crf 28' vconvert movie.mkv 800k

environment:
  VC_SUFFIX   tag used in the output name base-<SUFFIX>.ext (default: x265)
  VC_VCODEC   video codec (default: hevc_nvenc)
  VC_ACODEC   audio codec (default: libfdk_aac)
  VC_EXTRA    extra ffmpeg args, split on whitespace (default: empty)
  VC_VERBOSE  1 for info logging, 2 for debug logging
"""


class ConvertConfig(NamedTuple):
    suffix: str
    video_codec: str
    audio_codec: str
    extra_args: str
    verbose: int = 0


class InvocationRequest(NamedTuple):
    input_path: str
    bitrate: str
    dry_run: bool


class ResolvedPaths(NamedTuple):
    directory: str
    base_no_ext: str
    extension: str
    output_path: str


class _Cancelled(Exception):
    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum


def _env_value(environ: Mapping[str, str], name: str, default: str) -> str:
    # empty counts as unset
    return environ.get(name) or default


def load_config(environ: Optional[Mapping[str, str]] = None) -> ConvertConfig:
    env = os.environ if environ is None else environ
    raw_verbose = env.get("VC_VERBOSE", "").strip()
    try:
        verbose = int(raw_verbose) if raw_verbose else 0
    except ValueError:
        verbose = 0
    return ConvertConfig(
        suffix=_env_value(env, "VC_SUFFIX", DEFAULT_SUFFIX),
        video_codec=_env_value(env, "VC_VCODEC", DEFAULT_VCODEC),
        audio_codec=_env_value(env, "VC_ACODEC", DEFAULT_ACODEC),
        extra_args=env.get("VC_EXTRA", ""),
        verbose=verbose,
    )


def _build_help_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="vconvert",
        description=(
            "Transcode a video with ffmpeg at the given video bitrate. The output "
            "goes next to the source as <name>-<suffix><ext>; a numeric tag is "
            "added when that name is already taken."
        ),
        epilog=_HELP_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )
    ap.add_argument("input", help="Source media file.")
    ap.add_argument(
        "bitrate",
        help="Target video bitrate (e.g., 1500k, 2M). Bare digits get 'k' appended.",
    )
    ap.add_argument("-h", "--help", action="store_true", help="Show this help and exit.")
    ap.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Only print the ffmpeg command, do not execute it.",
    )
    return ap


def _die(message: str) -> None:
    logging.error("%s", message)
    sys.exit(EXIT_USAGE)


def _is_readable_file(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.R_OK)


def parse_arguments(argv: Sequence[str]) -> InvocationRequest:
    """Interpret a mixed positional/flag argument list.

    ``-h``/``--help`` and ``-n``/``--dry-run`` are honoured anywhere before
    ``--``. Any other dash-prefixed token has its dashes stripped and is taken
    as a positional value, so ``-movie.mkv -1500`` reads the same as
    ``movie.mkv 1500``. Everything after ``--`` is positional as-is.
    """
    dry_run = False
    positionals: List[str] = []

    def claim(token: str, value: str) -> None:
        if not value:
            logging.warning("ignoring empty argument %r", token)
            return
        if len(positionals) >= 2:
            _die(f"Unexpected extra argument: {token}")
        positionals.append(value)

    tokens = list(argv)
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]
        idx += 1
        if token in ("-h", "--help"):
            _build_help_parser().print_help()
            sys.exit(0)
        if token in ("-n", "--dry-run"):
            dry_run = True
            continue
        if token == "--":
            break
        if token.startswith("-"):
            claim(token, token.lstrip("-"))
        else:
            claim(token, token)

    # after the separator (if any) nothing is a flag
    for token in tokens[idx:]:
        claim(token, token)

    input_path = positionals[0] if positionals else ""
    bitrate = positionals[1] if len(positionals) > 1 else ""

    if not input_path:
        _die("No input file provided")
    if not bitrate:
        _die("No bitrate provided")
    if not _is_readable_file(input_path):
        _die(f"Input file '{input_path}' not found")

    return InvocationRequest(input_path=input_path, bitrate=bitrate, dry_run=dry_run)


def normalize_bitrate(token: str) -> str:
    bitrate = token
    if _DIGITS_RE.fullmatch(bitrate):
        bitrate = f"{bitrate}k"
    if not _BITRATE_RE.fullmatch(bitrate):
        logging.warning(
            "bitrate '%s' unusual; expected forms like 1500k or 2M", bitrate
        )
    return bitrate


def resolve_output_path(
    input_path: str,
    suffix: str,
    exists: Callable[[str], bool] = os.path.exists,
) -> ResolvedPaths:
    """Pick ``<dir>/<base>-<suffix><ext>``, or the first free ``-N`` variant.

    The existence probe and the later write by ffmpeg are not atomic; two
    concurrent runs on the same input can settle on the same name.
    """
    directory, sep, base_name = input_path.rpartition("/")
    if not sep:
        directory = "."
    if "." in base_name:
        base_no_ext, _, ext = base_name.rpartition(".")
        extension = "." + ext
    else:
        base_no_ext, extension = base_name, ""

    def candidate(tag: str) -> str:
        name = f"{base_no_ext}-{suffix}{tag}{extension}"
        if directory == ".":
            return name
        return f"{directory}/{name}"

    output_path = candidate("")
    if exists(output_path):
        for n in count(1):
            output_path = candidate(f"-{n}")
            if not exists(output_path):
                break
            logging.debug("output candidate %s already exists", output_path)

    return ResolvedPaths(
        directory=directory,
        base_no_ext=base_no_ext,
        extension=extension,
        output_path=output_path,
    )


def build_command(
    input_path: str, bitrate: str, output_path: str, config: ConvertConfig
) -> List[str]:
    cmd = [ENCODER]
    cmd += FFMPEG_GLOBAL_FLAGS
    cmd += ["-i", input_path]
    cmd += [
        "-c:v",
        config.video_codec,
        "-profile:v",
        "main10",
        "-b:v",
        bitrate,
        "-c:a",
        config.audio_codec,
        "-b:a",
        AUDIO_BITRATE,
        "-sn",
    ]
    if config.extra_args:
        # split on whitespace on purpose so one variable can carry several flags
        cmd += config.extra_args.split()
    cmd.append(output_path)
    return cmd


def format_command(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in cmd)


def report(
    request: InvocationRequest,
    bitrate: str,
    paths: ResolvedPaths,
    config: ConvertConfig,
    cmd: Sequence[str],
) -> None:
    print(f"Input : {request.input_path}")
    print(f"Bitrate: {bitrate}")
    print(f"Output: {paths.output_path}")
    print(f"Video codec: {config.video_codec} | Audio codec: {config.audio_codec}")
    if config.extra_args:
        print(f"Extra args: {config.extra_args}")
    print(f"Running: {format_command(cmd)}")


def require(program: str) -> None:
    if shutil.which(program) is None:
        _die(f"{program} not found (please install)")


def remove_partial_output(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logging.debug("failed to remove partial output %s: %s", path, exc)


def _install_cancel_handlers(fired: List[int], previous: Dict[int, Any]) -> None:
    # anything in ``fired`` makes the handler inert
    def on_signal(signum: int, frame: Optional[FrameType]) -> None:
        if fired:
            return
        fired.append(signum)
        raise _Cancelled(signum)

    for sig in CANCEL_SIGNALS:
        previous[sig] = signal.signal(sig, on_signal)


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler if handler is not None else signal.SIG_DFL)


def execute(cmd: List[str], output_path: str, dry_run: bool) -> None:
    """Run ``cmd`` with inherited stdio, or just announce it on a dry run.

    Returns normally on success. Failures leave through ``sys.exit`` with
    the encoder's status, or 130 when SIGINT/SIGTERM cancels the run.
    """
    if dry_run:
        print("(dry-run) Not executing.")
        return

    require(cmd[0])

    fired: List[int] = []
    previous: Dict[int, Any] = {}
    proc: Optional["subprocess.Popen[bytes]"] = None
    try:
        _install_cancel_handlers(fired, previous)
        with subprocess.Popen(cmd) as proc:
            try:
                proc.wait()
            except _Cancelled:
                if proc.returncode is None:
                    proc.kill()
                raise
    except _Cancelled as exc:
        logging.debug("received signal %s", exc.signum)
        if proc is None or proc.returncode != 0:
            logging.warning(
                "Interrupted; removing partial output '%s'", output_path
            )
            remove_partial_output(output_path)
            sys.exit(EXIT_INTERRUPTED)
        logging.warning("Interrupted after %s finished; keeping output", cmd[0])
    finally:
        fired.append(0)
        _restore_handlers(previous)

    if proc.returncode != 0:
        code = proc.returncode if proc.returncode > 0 else 128 - proc.returncode
        logging.error("%s exited with status %s", cmd[0], proc.returncode)
        sys.exit(code)

    print(f"Done. Generated {output_path}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    config = load_config()
    level = (
        logging.WARNING
        if config.verbose <= 0
        else (logging.INFO if config.verbose == 1 else logging.DEBUG)
    )
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    request = parse_arguments(sys.argv[1:] if argv is None else argv)
    bitrate = normalize_bitrate(request.bitrate)
    paths = resolve_output_path(request.input_path, config.suffix)
    logging.info("resolved output %s in %s", paths.output_path, paths.directory)
    cmd = build_command(request.input_path, bitrate, paths.output_path, config)

    report(request, bitrate, paths, config, cmd)
    execute(cmd, paths.output_path, request.dry_run)


if __name__ == "__main__":
    main()
