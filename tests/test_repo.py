import os
import pathlib
import sys
import tempfile
import unittest
from unittest import mock
from urllib import error as urllib_error


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from os_updates_exporter import repo
from os_updates_exporter.errors import CommandError, RepoCheckError


class SourceParserTests(unittest.TestCase):
    def test_apt_list(self):
        text = (
            "# deb http://commented.example/ubuntu jammy main\n"
            "deb [arch=amd64] http://archive.ubuntu.com/ubuntu jammy main\n"
            "deb-src https://src.example/ubuntu jammy main\n"
            "deb cdrom:[Ubuntu]/ jammy main\n"
        )
        self.assertEqual(
            repo.parse_apt_list(text),
            ["http://archive.ubuntu.com/ubuntu", "https://src.example/ubuntu"],
        )

    def test_deb822(self):
        text = "Types: deb\nURIs: http://a.example/ubuntu https://b.example/ubuntu\nSuites: noble\n"
        self.assertEqual(repo.parse_deb822_sources(text), ["http://a.example/ubuntu", "https://b.example/ubuntu"])

    def test_yum_repo(self):
        text = "[baseos]\nbaseurl=https://mirror.example/9/BaseOS/$basearch/os/\nmirrorlist=http://list.example/?r=9\ngpgcheck=1\n"
        self.assertEqual(
            repo.parse_yum_repo(text),
            ["https://mirror.example/9/BaseOS/$basearch/os/", "http://list.example/?r=9"],
        )

    def test_zypper_lr(self):
        text = (
            "# | Alias | Name | Enabled | GPG Check | Refresh | URI\n"
            "--+-------+------+---------+-----------+---------+-----\n"
            "1 | oss   | OSS  | Yes     | (r ) Yes  | Yes     | http://download.opensuse.org/distribution/leap/15.5/repo/oss/\n"
        )
        self.assertEqual(repo.parse_zypper_repos(text), ["http://download.opensuse.org/distribution/leap/15.5/repo/oss/"])

    def test_unique_keeps_order(self):
        self.assertEqual(repo.unique(["b", "a", "b", " ", "a"]), ["b", "a"])

    def test_apt_sources_walks_directory(self):
        with tempfile.TemporaryDirectory() as td:
            root = pathlib.Path(td)
            (root / "sources.list").write_text("deb http://one.example/ jammy main\n", encoding="utf-8")
            parts = root / "sources.list.d"
            parts.mkdir()
            (parts / "extra.list").write_text("deb http://two.example/ jammy main\n", encoding="utf-8")
            (parts / "ubuntu.sources").write_text("URIs: http://three.example/\n", encoding="utf-8")
            (parts / "ignored.save").write_text("deb http://four.example/ jammy main\n", encoding="utf-8")
            urls = repo.apt_sources(root / "sources.list", parts)
        self.assertEqual(urls, ["http://one.example/", "http://two.example/", "http://three.example/"])

    def test_zypper_listing_failure(self):
        runner = mock.Mock()
        runner.run.side_effect = CommandError("zypper exited 7", returncode=7)
        with self.assertRaises(RepoCheckError):
            repo.list_sources("zypper", runner)


class MetadataAgeTests(unittest.TestCase):
    def test_apt_release_age_is_max(self):
        with tempfile.TemporaryDirectory() as td:
            lists = pathlib.Path(td)
            old = lists / "a_InRelease"
            new = lists / "b_Release"
            old.write_text("", encoding="utf-8")
            new.write_text("", encoding="utf-8")
            os.utime(old, (1000, 1000))
            os.utime(new, (4000, 4000))
            age = repo.metadata_age_seconds("apt", now=5000, apt_lists_dir=lists)
        self.assertEqual(age, 4000)

    def test_rpm_cache(self):
        with tempfile.TemporaryDirectory() as td:
            cache = pathlib.Path(td)
            md = cache / "baseos-1234" / "repodata" / "repomd.xml"
            md.parent.mkdir(parents=True)
            md.write_text("<repomd/>", encoding="utf-8")
            os.utime(md, (100, 100))
            age = repo.metadata_age_seconds("dnf", now=400, cache_dirs={"dnf": (cache,)})
        self.assertEqual(age, 300)

    def test_no_metadata(self):
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(repo.metadata_age_seconds("apt", now=10, apt_lists_dir=pathlib.Path(td)), 0.0)


class HeadRequestTests(unittest.TestCase):
    def test_http_error_is_unreachable(self):
        err = urllib_error.HTTPError("http://x.example/", 404, "Not Found", {}, None)
        with mock.patch("os_updates_exporter.repo.urllib_request.urlopen", side_effect=err):
            reachable, latency = repo.head_request("http://x.example/", 1.0)
        self.assertFalse(reachable)
        self.assertGreaterEqual(latency, 0.0)

    def test_transport_error_is_unreachable(self):
        with mock.patch(
            "os_updates_exporter.repo.urllib_request.urlopen",
            side_effect=urllib_error.URLError("refused"),
        ):
            reachable, _ = repo.head_request("http://x.example/", 1.0)
        self.assertFalse(reachable)

    def test_success_uses_head(self):
        response = mock.MagicMock()
        response.__enter__.return_value.status = 200
        with mock.patch("os_updates_exporter.repo.urllib_request.urlopen", return_value=response) as urlopen:
            reachable, _ = repo.head_request("http://x.example/", 2.0)
        self.assertTrue(reachable)
        req = urlopen.call_args.args[0]
        self.assertEqual(req.get_method(), "HEAD")
        self.assertEqual(urlopen.call_args.kwargs["timeout"], 2.0)


class CheckReposTests(unittest.TestCase):
    def test_counts_and_average_latency(self):
        urls = ["http://a.example/", "http://b.example/", "http://c.example/"]
        results = {"http://a.example/": (True, 0.1), "http://b.example/": (False, 0.5), "http://c.example/": (True, 0.3)}
        with mock.patch("os_updates_exporter.repo.list_sources", return_value=urls), mock.patch(
            "os_updates_exporter.repo.metadata_age_seconds", return_value=120.0
        ):
            result = repo.check_repos("apt", 1.0, runner=mock.Mock(), head=lambda url, timeout: results[url])
        self.assertTrue(result.valid)
        self.assertEqual(result.total, 3)
        self.assertEqual(result.unreachable, 1)
        self.assertAlmostEqual(result.head_latency_seconds, 0.3)
        self.assertEqual(result.metadata_age_seconds, 120.0)

    def test_no_sources(self):
        with mock.patch("os_updates_exporter.repo.list_sources", return_value=[]), mock.patch(
            "os_updates_exporter.repo.metadata_age_seconds", return_value=0.0
        ):
            result = repo.check_repos("dnf", 1.0, runner=mock.Mock(), head=lambda url, timeout: (True, 0.0))
        self.assertTrue(result.valid)
        self.assertEqual(result.total, 0)
        self.assertEqual(result.head_latency_seconds, 0.0)

    def test_unknown_manager_is_invalid(self):
        self.assertFalse(repo.check_repos("unknown", 1.0).valid)


if __name__ == "__main__":
    unittest.main()
