"""Tests for the spec_sections command-line tool."""

import json

import pytest

import spec_sections
from spec_parse import partition

SPEC = """\
Name: foo
Version: 1.0

%description
Foo.

%package devel
Summary: headers

%build
make

%post -p /sbin/ldconfig

%files -f %{name}.lang
/usr/bin/foo

%files devel
/usr/include/foo.h
"""


@pytest.fixture
def specfile(tmp_path):
    p = tmp_path / "foo.spec"
    p.write_text(SPEC, encoding="utf-8")
    return str(p)


class TestText:

    def test_all_sections(self, specfile, capsys):
        assert spec_sections.main([specfile]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Name: foo\nVersion: 1.0\n\n%description\n")
        assert "%build\nmake\n" in out
        assert out.endswith("%files devel\n/usr/include/foo.h\n")

    def test_output_partitions_like_input(self, specfile, capsys):
        assert spec_sections.main([specfile]) == 0
        out = capsys.readouterr().out
        assert partition(out) == partition(SPEC)

    def test_empty_preamble_not_printed(self, tmp_path, capsys):
        p = tmp_path / "x.spec"
        p.write_text("%build\nmake\n", encoding="utf-8")
        assert spec_sections.main([str(p)]) == 0
        assert capsys.readouterr().out == "%build\nmake\n"

    def test_one_section(self, specfile, capsys):
        assert spec_sections.main(["-s", "build", specfile]) == 0
        assert capsys.readouterr().out == "%build\nmake\n"


class TestJson:

    def test_shape(self, specfile, capsys):
        assert spec_sections.main(["-j", specfile]) == 0
        blocks = json.loads(capsys.readouterr().out)
        assert [b["name"] for b in blocks] == [
            "%package", "%description", "%package", "%build", "%post",
            "%files", "%files",
        ]
        post = blocks[4]
        assert post["opts"] == {"-p": "/sbin/ldconfig"}
        assert post["package"] == "foo"
        assert post["lines"] == ["%post -p /sbin/ldconfig"]
        assert blocks[0]["lines"] == ["Name: foo", "Version: 1.0"]

    def test_package_filter(self, specfile, capsys):
        assert spec_sections.main(["-j", "-p", "foo-devel", specfile]) == 0
        blocks = json.loads(capsys.readouterr().out)
        assert [b["lines"][0] for b in blocks] == ["%package devel",
                                                   "%files devel"]

    def test_section_and_package(self, specfile, capsys):
        assert spec_sections.main(["-j", "-s", "%files", "-p", "foo",
                                   specfile]) == 0
        [files] = json.loads(capsys.readouterr().out)
        assert files["opts"] == {"-f": ["foo.lang"]}
        assert files["args"] == []

    def test_defines(self, tmp_path, capsys):
        p = tmp_path / "x.spec"
        p.write_text("%files -f %{flist}\n", encoding="utf-8")
        assert spec_sections.main(["-j", "-D", "flist files.txt",
                                   str(p)]) == 0
        blocks = json.loads(capsys.readouterr().out)
        assert blocks[1]["opts"] == {"-f": ["files.txt"]}
        assert blocks[1]["package"] is None

    def test_unnamed_subpackage(self, tmp_path, capsys):
        p = tmp_path / "x.spec"
        p.write_text("%package doc\nSummary: docs\n%files doc\n/a\n",
                     encoding="utf-8")
        assert spec_sections.main(["-j", "-v", str(p)]) == 0
        captured = capsys.readouterr()
        blocks = json.loads(captured.out)
        assert [b["package"] for b in blocks] == [None, None, None]
        assert blocks[2]["args"] == ["doc"]
        assert "No Name tag" in captured.err

        assert spec_sections.main(["-j", "-p", "doc", str(p)]) == 0
        assert json.loads(capsys.readouterr().out) == []


class TestErrors:

    def test_missing_file(self, tmp_path, capsys):
        assert spec_sections.main([str(tmp_path / "nope.spec")]) == 1
        err = capsys.readouterr().err
        assert err.startswith("ERROR: ")
        assert "No such file" in err

    def test_missing_value(self, tmp_path, capsys):
        p = tmp_path / "x.spec"
        p.write_text("%pre -p\n", encoding="utf-8")
        assert spec_sections.main([str(p)]) == 1
        assert "requires a value" in capsys.readouterr().err

    def test_strict(self, tmp_path, capsys):
        p = tmp_path / "x.spec"
        p.write_text("Name: x\n%files -x\n/a\n", encoding="utf-8")
        assert spec_sections.main([str(p)]) == 0
        capsys.readouterr()
        assert spec_sections.main(["--strict", str(p)]) == 1
        assert "Unknown option -x" in capsys.readouterr().err

    def test_bad_define(self, specfile, capsys):
        assert spec_sections.main(["-D", "oops", specfile]) == 1
        assert "Bad macro definition" in capsys.readouterr().err


def test_verbose_logs_to_stderr(specfile, capsys):
    assert spec_sections.main(["-v", "-s", "%build", specfile]) == 0
    captured = capsys.readouterr()
    assert captured.out == "%build\nmake\n"
    assert "7 sections" in captured.err
