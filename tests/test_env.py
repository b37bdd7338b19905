from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path

from codexbridge.env import (
    build_child_env,
    build_git_hint,
    describe_env,
    format_env_value,
    git_candidates,
    mask_token,
)


class ChildEnvTests(unittest.TestCase):
    def test_prepends_missing_standard_entries(self) -> None:
        env = build_child_env({"PATH": "/custom/bin:/usr/bin", "HOME": "/home/me"})
        entries = env["PATH"].split(os.pathsep)
        self.assertEqual(entries[0], "/usr/local/bin")
        self.assertEqual(entries[-2:], ["/custom/bin", "/usr/bin"])
        self.assertEqual(entries.count("/usr/bin"), 1)
        self.assertEqual(env["HOME"], "/home/me")

    def test_missing_path(self) -> None:
        env = build_child_env({})
        self.assertTrue(env["PATH"].startswith("/usr/local/bin"))

    def test_does_not_mutate_input(self) -> None:
        source = {"PATH": "/x"}
        build_child_env(source)
        self.assertEqual(source, {"PATH": "/x"})


class MaskingTests(unittest.TestCase):
    def test_mask_token(self) -> None:
        self.assertEqual(mask_token("sk-test-1234567890"), "sk-tes...7890")
        self.assertEqual(mask_token("short"), "***")

    def test_format_env_value(self) -> None:
        self.assertEqual(format_env_value(""), "missing")
        self.assertEqual(format_env_value(None), "missing")
        self.assertEqual(format_env_value("short"), "***")

    def test_describe_env(self) -> None:
        summary = describe_env({"OPENAI_API_KEY": "sk-test-1234567890"}, keys=("OPENAI_API_KEY", "CODEX_HOME"))
        self.assertEqual(summary, {"OPENAI_API_KEY": "sk-tes...7890", "CODEX_HOME": "missing"})


class GitHintTests(unittest.TestCase):
    def test_lists_existing_candidates(self) -> None:
        existing = {"/a/.git"}
        self.assertEqual(build_git_hint(["/a/.git", "/b/.git"], exists=existing.__contains__), "/a/.git")
        self.assertEqual(build_git_hint(["/b/.git"], exists=existing.__contains__), "none")

    def test_git_candidates_on_disk(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            repo = Path(tmp) / "repo"
            (repo / ".git").mkdir(parents=True)
            hint = build_git_hint(git_candidates(repo))
            self.assertEqual(hint, str(repo / ".git"))


if __name__ == "__main__":
    unittest.main()
