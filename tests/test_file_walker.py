from pathlib import Path

from utils.file_walker import FileEnumerator, is_parity_dir


def _touch(path: Path, content: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_enumerator_skips_parity_dirs_and_filters_extensions(tmp_path: Path) -> None:
    _touch(tmp_path / "b.txt")
    _touch(tmp_path / "a.JPG")
    _touch(tmp_path / "nested" / "c.txt", "hello")
    _touch(tmp_path / ".parity" / "root.par2")
    _touch(tmp_path / ".parity-jpg" / "a.JPG.par2")
    (tmp_path / "link.txt").symlink_to(tmp_path / "b.txt")

    everything = FileEnumerator.excluding_parity(".parity")
    names = [path.relative_to(tmp_path).as_posix() for path in everything.iter_files(tmp_path)]
    assert names == ["a.JPG", "b.txt", "nested/c.txt"]

    # The same enumerator can be walked again.
    assert list(everything.iter_files(tmp_path)) == list(everything.iter_files(tmp_path))

    text_only = FileEnumerator.excluding_parity(".parity", [".TXT"])
    assert [path.name for path in text_only.iter_files(tmp_path)] == ["b.txt", "c.txt"]
    assert list(text_only.iter_files(tmp_path / "a.JPG")) == []
    assert list(text_only.iter_files(tmp_path / "b.txt")) == [tmp_path / "b.txt"]


def test_is_parity_dir() -> None:
    assert is_parity_dir(Path("/x/.parity"))
    assert is_parity_dir(Path("/x/.parity-mkv-mp4"))
    assert not is_parity_dir(Path("/x/.parityish"))
    assert is_parity_dir(Path("/x/_p2"), "_p2")
