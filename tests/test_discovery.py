from __future__ import annotations

import pytest

from pdf_sanitizer.discovery import resolve_work_items
from pdf_sanitizer.errors import DiscoveryError


def test_batch_items_are_sorted_and_prefixed(make_config, input_dir, output_dir, write_pdf):
    write_pdf(input_dir / "b.pdf")
    write_pdf(input_dir / "a.pdf")
    write_pdf(input_dir / "sub" / "c.pdf")
    (input_dir / "notes.txt").write_text("skip me", encoding="utf-8")

    items = resolve_work_items(make_config())

    assert [item.input_path for item in items] == [
        input_dir / "a.pdf",
        input_dir / "b.pdf",
        input_dir / "sub" / "c.pdf",
    ]
    assert [item.output_path for item in items] == [
        output_dir / "sanitized_a.pdf",
        output_dir / "sanitized_b.pdf",
        output_dir / "sanitized_c.pdf",
    ]
    assert output_dir.is_dir()


def test_mirroring_reproduces_subdirectories(make_config, input_dir, output_dir, write_pdf):
    write_pdf(input_dir / "sub" / "a.pdf")
    write_pdf(input_dir / "top.pdf")

    items = resolve_work_items(make_config(mirror_dir_structure=True, output_prefix="clean_"))

    by_name = {item.input_path.name: item for item in items}
    assert by_name["a.pdf"].output_path == output_dir / "sub" / "clean_a.pdf"
    assert by_name["top.pdf"].output_path == output_dir / "clean_top.pdf"
    assert (output_dir / "sub").is_dir()


def test_pattern_filters_by_file_name(make_config, input_dir, write_pdf):
    write_pdf(input_dir / "report_secure.pdf")
    write_pdf(input_dir / "report.pdf")

    items = resolve_work_items(make_config(file_pattern="*_secure.pdf"))

    assert [item.input_path.name for item in items] == ["report_secure.pdf"]


def test_zero_matches_is_fatal(make_config, input_dir):
    (input_dir / "readme.txt").write_text("nothing here", encoding="utf-8")

    with pytest.raises(DiscoveryError):
        resolve_work_items(make_config())


def test_missing_input_directory_is_fatal(make_config, tmp_path):
    with pytest.raises(DiscoveryError):
        resolve_work_items(make_config(input_dir=tmp_path / "nope"))


def test_dry_run_creates_no_directories(make_config, input_dir, output_dir, write_pdf):
    write_pdf(input_dir / "sub" / "a.pdf")

    items = resolve_work_items(make_config(dry_run=True, mirror_dir_structure=True))

    assert len(items) == 1
    assert not output_dir.exists()


def test_single_file_mode_skips_discovery(make_config, tmp_path):
    source = tmp_path / "elsewhere" / "in.pdf"
    target = tmp_path / "dest" / "out.pdf"

    items = resolve_work_items(make_config(single_input=source, single_output=target))

    assert len(items) == 1
    assert items[0].input_path == source
    assert items[0].output_path == target
    assert target.parent.is_dir()


def test_outputs_nested_in_input_tree_are_not_rediscovered(make_config, input_dir, write_pdf):
    write_pdf(input_dir / "a.pdf")
    nested_output = input_dir / "cleaned"
    write_pdf(nested_output / "sanitized_a.pdf")

    items = resolve_work_items(make_config(output_dir=nested_output))

    assert [item.input_path.name for item in items] == ["a.pdf"]


def test_flattened_name_collision_is_logged(make_config, input_dir, output_dir, write_pdf, caplog):
    write_pdf(input_dir / "a" / "x.pdf")
    write_pdf(input_dir / "b" / "x.pdf")

    with caplog.at_level("WARNING", logger="pdf_sanitizer.discovery"):
        items = resolve_work_items(make_config())

    assert [item.output_path for item in items] == [output_dir / "sanitized_x.pdf"] * 2
    assert "both map to" in caplog.text
    assert "MIRROR_DIR_STRUCTURE" in caplog.text


def test_mirrored_names_do_not_collide(make_config, input_dir, write_pdf, caplog):
    write_pdf(input_dir / "a" / "x.pdf")
    write_pdf(input_dir / "b" / "x.pdf")

    with caplog.at_level("WARNING", logger="pdf_sanitizer.discovery"):
        items = resolve_work_items(make_config(mirror_dir_structure=True))

    assert len({item.output_path for item in items}) == 2
    assert "both map to" not in caplog.text
