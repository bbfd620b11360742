import os
import sys
import enum
import shutil
import argparse
import logging
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import eyed3
import eyed3.id3
import mutagen
from mutagen.flac import FLAC
from mutagen.mp4 import MP4
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

__version__ = '1.0.0'

LRC_EXTENSION = '.lrc'
FAILED_SUFFIX = '.failed'

FLAC_LYRICS_KEYS = ('LYRICS', 'UNSYNCEDLYRICS')
ID3_LYRICS_FRAMES = (b'USLT', b'SYLT')
ID3_LYRICS_LANG = b'eng'
MP4_LYRICS_ATOM = '\xa9lyr'


class LyricsyncError(Exception):
    """Base class for errors raised while embedding lyrics."""


class UnsupportedFormatError(LyricsyncError):
    def __init__(self, extension: str):
        super().__init__(f"Unsupported file format: {extension or '<none>'}")
        self.extension = extension


class CodecError(LyricsyncError):
    """The tag layer could not parse or write a container."""

    def __init__(self, path: str, reason):
        super().__init__(f"Audio file error: {path}: {reason}")
        self.path = path
        self.reason = reason


class ContainerKind(enum.Enum):
    FLAC = '.flac'
    MP3 = '.mp3'
    M4A = '.m4a'

    @property
    def extension(self) -> str:
        return self.value


def classify(path: str) -> Optional[ContainerKind]:
    """Return the container kind for `path` from its extension, or None if unsupported."""
    ext = os.path.splitext(path)[1]
    for kind in ContainerKind:
        if kind.extension == ext:
            return kind
    return None


def sidecar_path_for(audio_path: str) -> str:
    """Expected .lrc path for an audio file: same directory, same stem."""
    return os.path.splitext(audio_path)[0] + LRC_EXTENSION


@dataclass(frozen=True)
class AudioEntry:
    path: str
    kind: ContainerKind

    @property
    def sidecar_path(self) -> str:
        return sidecar_path_for(self.path)

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


@dataclass
class ScanResult:
    """Audio files found under a directory and the traversal errors skipped along the way."""
    entries: List[AudioEntry] = field(default_factory=list)
    errors: List[OSError] = field(default_factory=list)


def scan_audio_files(directory: str, recursive: bool) -> ScanResult:
    """Collect supported audio files under `directory`.

    Only the directory's own files are listed unless `recursive` is set.
    Unreadable directories (including a missing root) are recorded in
    `ScanResult.errors` and otherwise ignored.
    """
    result = ScanResult()
    for root, dirs, files in os.walk(directory, onerror=result.errors.append):
        for file in files:
            kind = classify(file)
            if kind is not None:
                result.entries.append(AudioEntry(os.path.join(root, file), kind))
        if not recursive:
            break
    for err in result.errors:
        logging.debug(f"[SCAN] Skipped unreadable entry: {err}")
    return result


# Presence detection

def _flac_has_lyrics(path: str) -> bool:
    audio = FLAC(path)
    if audio.tags is None:
        return False
    return any(key in audio.tags for key in FLAC_LYRICS_KEYS)


def _load_mp3(path: str):
    audio = eyed3.load(path)
    if audio is None:
        raise CodecError(path, "not recognised as an MP3 file")
    return audio


def _mp3_has_lyrics(path: str) -> bool:
    audio = _load_mp3(path)
    if audio.tag is None:
        return False
    return any(fid in audio.tag.frame_set for fid in ID3_LYRICS_FRAMES)


def _m4a_has_lyrics(path: str) -> bool:
    audio = MP4(path)
    return bool(audio.tags and MP4_LYRICS_ATOM in audio.tags)


_PRESENCE_CHECKS: Dict[ContainerKind, Callable[[str], bool]] = {
    ContainerKind.FLAC: _flac_has_lyrics,
    ContainerKind.MP3: _mp3_has_lyrics,
    ContainerKind.M4A: _m4a_has_lyrics,
}


def has_embedded_lyrics(path: str, kind: Optional[ContainerKind] = None) -> bool:
    """Return True if the audio file at `path` already carries lyrics.

    FLAC files are checked for a LYRICS or UNSYNCEDLYRICS comment, MP3 files
    for a USLT or SYLT frame and M4A files for a lyrics atom. A file without
    any tag block has no lyrics. Raises CodecError if the container cannot be
    read and UnsupportedFormatError for other extensions.
    """
    kind = kind or classify(path)
    if kind is None:
        raise UnsupportedFormatError(os.path.splitext(path)[1])
    try:
        return _PRESENCE_CHECKS[kind](path)
    except (mutagen.MutagenError, eyed3.Error) as e:
        raise CodecError(path, e) from e


# Tag mutation

def _write_flac_lyrics(path: str, lyrics: str) -> None:
    audio = FLAC(path)
    if audio.tags is None:
        audio.add_tags()
    audio['LYRICS'] = lyrics
    audio.save()


def _write_mp3_lyrics(path: str, lyrics: str) -> None:
    audio = _load_mp3(path)
    if audio.tag is None:
        audio.initTag()
    # Only one USLT frame should survive, whatever its language or description
    audio.tag.frame_set.pop(b'USLT', None)
    audio.tag.lyrics.set(lyrics, description='', lang=ID3_LYRICS_LANG)
    audio.tag.save(version=eyed3.id3.ID3_V2_3)


def _write_m4a_lyrics(path: str, lyrics: str) -> None:
    audio = MP4(path)
    if audio.tags is None:
        audio.add_tags()
    audio.tags[MP4_LYRICS_ATOM] = [lyrics]
    audio.save()


_LYRICS_WRITERS: Dict[ContainerKind, Callable[[str, str], None]] = {
    ContainerKind.FLAC: _write_flac_lyrics,
    ContainerKind.MP3: _write_mp3_lyrics,
    ContainerKind.M4A: _write_m4a_lyrics,
}


def _replace_atomically(path: str, update: Callable[[str], None]) -> None:
    """Apply `update` to a copy of `path` and move the copy over the original.

    Symlinks are resolved first so the file they point to gets the new tags.
    The copy lives next to that file and keeps its extension, which the
    codecs use to pick a parser. Files with several hard links, and files
    whose directory or ownership cannot be reproduced by a fresh copy, are
    updated in place by the codec instead.
    """
    real_path = os.path.realpath(path)
    st = os.stat(real_path)
    if st.st_nlink > 1:
        # Replacing the directory entry would detach the other links
        update(real_path)
        return

    directory = os.path.dirname(real_path)
    ext = os.path.splitext(real_path)[1]
    try:
        fd, tmp_path = tempfile.mkstemp(prefix='.lyricsync-', suffix=ext, dir=directory)
    except PermissionError:
        logging.debug(f"[WRITE] {directory} is not writable, saving {real_path} in place")
        update(real_path)
        return
    os.close(fd)
    try:
        shutil.copy2(real_path, tmp_path)
        if not _copy_ownership(st, tmp_path):
            os.remove(tmp_path)
            logging.debug(f"[WRITE] Cannot keep owner of {real_path}, saving in place")
            update(real_path)
            return
        update(tmp_path)
        os.replace(tmp_path, real_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _copy_ownership(st: os.stat_result, tmp_path: str) -> bool:
    """Give `tmp_path` the owner and group from `st`. Returns False if not permitted."""
    if not hasattr(os, 'chown'):
        return True
    tmp_st = os.stat(tmp_path)
    if (tmp_st.st_uid, tmp_st.st_gid) == (st.st_uid, st.st_gid):
        return True
    try:
        os.chown(tmp_path, st.st_uid, st.st_gid)
    except PermissionError:
        return False
    return True


def embed_lyrics_text_to_file(audio_path: str, lyrics: str) -> None:
    """Embed the given lyrics text into the audio file in place.

    The original file is only replaced once the new tags were saved
    successfully. Raises UnsupportedFormatError for unknown extensions,
    CodecError when the tag layer fails and OSError for file system errors.
    """
    kind = classify(audio_path)
    if kind is None:
        raise UnsupportedFormatError(os.path.splitext(audio_path)[1])
    writer = _LYRICS_WRITERS[kind]
    try:
        _replace_atomically(audio_path, lambda tmp_path: writer(tmp_path, lyrics))
    except (mutagen.MutagenError, eyed3.Error) as e:
        raise CodecError(audio_path, e) from e


def read_lrc(lrc_path: str) -> str:
    with open(lrc_path, 'r', encoding='utf-8') as f:
        return f.read()


# Orchestration

class Outcome(enum.Enum):
    SIDECAR_MISSING = 'no lrc'
    LYRICS_PRESENT = 'skipped'
    DRY_RUN = 'would embed'
    EMBEDDED = 'embedded'
    FAILED = 'error'


@dataclass(frozen=True)
class EmbedOptions:
    skip_existing: bool = False
    reduce_lrc: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class FileOutcome:
    """What happened to one audio file during a run."""
    entry: AudioEntry
    outcome: Outcome
    error: Optional[Exception] = None
    warnings: Tuple[str, ...] = ()


@dataclass
class RunStatistics:
    total_audio_files: int = 0
    embedded_count: int = 0
    failed_files: List[str] = field(default_factory=list)
    skipped_files: List[str] = field(default_factory=list)
    dry_run_files: List[str] = field(default_factory=list)
    missing_sidecar_count: int = 0
    scan_errors: List[OSError] = field(default_factory=list)
    outcomes: List[FileOutcome] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_audio_files == 0:
            return 0.0
        return (self.embedded_count / self.total_audio_files) * 100

    def record(self, result: FileOutcome) -> None:
        self.outcomes.append(result)
        path = result.entry.path
        if result.outcome is Outcome.EMBEDDED:
            self.embedded_count += 1
        elif result.outcome is Outcome.FAILED:
            self.failed_files.append(path)
        elif result.outcome is Outcome.LYRICS_PRESENT:
            self.skipped_files.append(path)
        elif result.outcome is Outcome.DRY_RUN:
            self.dry_run_files.append(path)
        else:
            self.missing_sidecar_count += 1


def _mark_lrc_failed(lrc_path: str) -> Optional[str]:
    """Rename a sidecar that could not be embedded. Returns an error message if that fails too."""
    try:
        shutil.move(lrc_path, lrc_path + FAILED_SUFFIX)
    except OSError as e:
        logging.error(f"[ERROR] Error renaming failed LRC file {lrc_path}: {e}")
        return f"rename failed: {e}"
    return None


def process_audio_file(entry: AudioEntry, options: EmbedOptions) -> FileOutcome:
    """Run one audio file through match, detect and embed.

    Never raises for per-file problems; they are logged and returned as a
    FAILED outcome.
    """
    lrc_path = entry.sidecar_path
    if not os.path.exists(lrc_path):
        logging.debug(f"[MISS] No LRC file for {entry.path}")
        return FileOutcome(entry, Outcome.SIDECAR_MISSING)

    warnings: List[str] = []
    if options.skip_existing:
        try:
            if has_embedded_lyrics(entry.path, entry.kind):
                logging.info(f"[SKIP] Already has embedded lyrics: {entry.path}")
                return FileOutcome(entry, Outcome.LYRICS_PRESENT)
        except Exception as e:
            # Inconclusive check, embed anyway
            logging.warning(f"[WARN] Error checking lyrics for {entry.path}: {e}")
            warnings.append(f"lyrics check failed: {e}")

    if options.dry_run:
        logging.info(f"[DRY RUN] Would embed {lrc_path} into {entry.path}")
        return FileOutcome(entry, Outcome.DRY_RUN, warnings=tuple(warnings))

    try:
        lyrics = read_lrc(lrc_path)
        embed_lyrics_text_to_file(entry.path, lyrics)
    except Exception as e:
        logging.error(f"[ERROR] Error embedding LRC for {entry.path}: {e}")
        rename_error = _mark_lrc_failed(lrc_path)
        if rename_error:
            warnings.append(rename_error)
        return FileOutcome(entry, Outcome.FAILED, error=e, warnings=tuple(warnings))

    logging.info(f"[EMBED] Embedded lyrics for {entry.path}")
    if options.reduce_lrc:
        try:
            os.remove(lrc_path)
            logging.debug(f"[REDUCE] Removed {lrc_path}")
        except OSError as e:
            logging.error(f"[ERROR] Error removing LRC file {lrc_path}: {e}")
            warnings.append(f"reduce failed: {e}")
    return FileOutcome(entry, Outcome.EMBEDDED, warnings=tuple(warnings))


def run_embedding(entries: Iterable[AudioEntry], options: EmbedOptions,
                  stats: RunStatistics) -> Iterator[FileOutcome]:
    """Process entries in order, recording each outcome in `stats` before yielding it."""
    for entry in entries:
        result = process_audio_file(entry, options)
        stats.record(result)
        yield result


def embed_lrc(directory: str, skip_existing: bool = False, reduce_lrc: bool = False,
              recursive: bool = False, dry_run: bool = False, progress: bool = True) -> RunStatistics:
    """Embed .lrc files found in `directory` into the matching audio files.

    Every supported audio file counts toward the total, with or without a
    sidecar. Failures are collected in the returned statistics.
    """
    scan = scan_audio_files(directory, recursive)
    stats = RunStatistics(total_audio_files=len(scan.entries), scan_errors=scan.errors)
    options = EmbedOptions(skip_existing=skip_existing, reduce_lrc=reduce_lrc, dry_run=dry_run)

    with logging_redirect_tqdm(), \
            tqdm(total=len(scan.entries), desc='Embedding LRC files', unit='file', disable=not progress) as pbar:
        for result in run_embedding(scan.entries, options, stats):
            pbar.set_postfix({"status": f"{result.outcome.value}: {result.entry.name}"})
            pbar.update(1)
    return stats


BANNER = r"""
██      ██    ██ ██████  ██  ██████     ███████ ██    ██ ███    ██  ██████
██       ██  ██  ██   ██ ██ ██          ██       ██  ██  ████   ██ ██
██        ████   ██████  ██ ██          ███████   ████   ██ ██  ██ ██
██         ██    ██   ██ ██ ██               ██    ██    ██  ██ ██ ██
███████    ██    ██   ██ ██  ██████     ███████    ██    ██   ████  ██████
"""


def format_summary(stats: RunStatistics) -> str:
    lines = [
        "Summary:",
        f"Total audio files: {stats.total_audio_files}",
        f"Embedded lyrics in {stats.embedded_count} audio files",
    ]
    if stats.skipped_files:
        lines.append(f"Skipped {len(stats.skipped_files)} files with existing lyrics")
    if stats.dry_run_files:
        lines.append(f"[DRY RUN] Would embed lyrics in {len(stats.dry_run_files)} audio files")
    lines.append(f"Success rate: {stats.success_rate:.2f}%")
    if stats.failed_files:
        lines.append("")
        lines.append("Failed to embed LRC for the following files:")
        lines.extend(f"  {path}" for path in stats.failed_files)
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='lyricsync', description='Embed LRC lyrics into audio files (FLAC, MP3, M4A)')
    parser.add_argument('-d', '--directory', metavar='DIRECTORY', required=True,
                        help='Directory containing audio and LRC files')
    parser.add_argument('-s', '--skip', action='store_true', help='Skip files that already have embedded lyrics')
    parser.add_argument('-r', '--reduce', action='store_true', help='Delete LRC files after successful embedding')
    parser.add_argument('-R', '--recursive', action='store_true', help='Process subdirectories recursively')
    parser.add_argument('--dry-run', action='store_true', help='Show what would be embedded without writing anything')
    parser.add_argument('--no-progress', action='store_true', help='Do not show the progress bar')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entrypoint. Returns the process exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='[%(levelname)s] %(message)s')

    print(BANNER)
    if args.dry_run:
        print("[DRY RUN] No files will be modified")

    stats = embed_lrc(args.directory, skip_existing=args.skip, reduce_lrc=args.reduce,
                      recursive=args.recursive, dry_run=args.dry_run, progress=not args.no_progress)

    print()
    print(format_summary(stats))
    return 0


if __name__ == "__main__":
    sys.exit(main())
