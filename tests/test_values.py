from __future__ import annotations

import os

import pytest

from helixflow.dsl import param
from helixflow.errors import EvaluationError, TypeMismatch, UnresolvedDependency, ValidationError
from helixflow.values import (
    ABSENT,
    File,
    Struct,
    bind,
    coerce,
    parse_size,
    parse_type,
    resolve_default,
    select_all,
    select_first,
)


def test_parse_type_round_trips_through_str() -> None:
    for text in ("File", "Array[File]?", "Map[String, Int]", "Struct[bam: File, bai: File?]"):
        assert str(parse_type(text)) == text


def test_parse_type_rejects_bad_input() -> None:
    with pytest.raises(ValidationError):
        parse_type("Map[Int, String]")
    with pytest.raises(ValidationError):
        parse_type("Array[File")
    with pytest.raises(ValidationError):
        parse_type("Bam")


def test_coerce_checks_tags() -> None:
    assert coerce(parse_type("Float"), 3) == 3.0
    assert coerce(parse_type("Array[Int]"), [1, 2]) == (1, 2)
    with pytest.raises(TypeMismatch):
        coerce(parse_type("Int"), True)
    with pytest.raises(TypeMismatch):
        coerce(parse_type("Boolean"), "true")
    with pytest.raises(TypeMismatch):
        coerce(parse_type("Array[String]"), "a")


def test_absent_only_fits_optional_types() -> None:
    assert coerce(parse_type("File?"), None) is ABSENT
    with pytest.raises(TypeMismatch):
        coerce(parse_type("File"), None)


def test_relative_files_resolve_against_base_dir(tmp_path) -> None:
    f = coerce(parse_type("File"), "reads/s1.fq.gz", tmp_path)
    assert f == File(str(tmp_path / "reads" / "s1.fq.gz"))


def test_struct_members() -> None:
    t = parse_type("Struct[bam: File, bai: File?]")
    v = coerce(t, {"bam": "/data/s1.bam"})
    assert isinstance(v, Struct)
    assert v["bai"] is ABSENT
    with pytest.raises(TypeMismatch):
        coerce(t, {"bam": "/data/s1.bam", "crai": "/data/s1.crai"})


def test_bind_names_the_parameter() -> None:
    with pytest.raises(TypeMismatch, match="threads"):
        bind(param("threads", "Int"), "four")


def test_resolve_default_uses_earlier_inputs() -> None:
    prefix = param("prefix", "String", "basename(bam, '.bam')")
    assert resolve_default(prefix, {"bam": File("/data/sample_1.bam")}) == "sample_1"
    with pytest.raises(UnresolvedDependency):
        resolve_default(prefix, {})


def test_select_first_and_select_all() -> None:
    assert select_first([ABSENT, "value2"]) == "value2"
    assert select_all([ABSENT, "a", ABSENT, "b"]) == ("a", "b")
    with pytest.raises(EvaluationError):
        select_first([ABSENT, ABSENT])


def test_parse_size_units() -> None:
    assert parse_size("4 GB") == 4_000_000_000
    assert parse_size("512MiB") == 512 * 1024 ** 2
    assert parse_size("2G") == 2 * 1024 ** 3
    assert parse_size(100) == 100
    with pytest.raises(ValidationError):
        parse_size("4 XB")


def test_file_fingerprint_tracks_size(tmp_path) -> None:
    p = tmp_path / "a.txt"
    p.write_text("one")
    first = File(str(p)).fingerprint
    p.write_text("one two")
    os.utime(p, ns=(1, 2))
    assert File(str(p)).fingerprint != first
