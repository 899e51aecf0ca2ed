import pytest

from vnocr.services.scratch import ScratchManager


class TestScratchManager:
    def test_acquire_creates_isolated_directory(self, scratch: ScratchManager) -> None:
        first = scratch.acquire("job-1")
        second = scratch.acquire("job-2")

        assert first.path != second.path
        assert first.pages_dir.is_dir()
        assert sorted(scratch.active_jobs()) == ["job-1", "job-2"]

    def test_duplicate_job_id_rejected(self, scratch: ScratchManager) -> None:
        scratch.acquire("job-1")
        with pytest.raises(FileExistsError):
            scratch.acquire("job-1")

    def test_release_removes_everything(self, scratch: ScratchManager) -> None:
        space = scratch.acquire("job-1")
        space.write_source(b"%PDF-1.4")
        (space.pages_dir / "page_00001.jpg").write_bytes(b"\xff\xd8")

        assert space.release()

        assert not space.path.exists()
        assert space.released
        assert scratch.active_jobs() == []

    def test_release_is_idempotent(self, scratch: ScratchManager) -> None:
        space = scratch.acquire("job-1")

        assert space.release()
        assert not space.release()

    def test_release_after_partial_removal(self, scratch: ScratchManager) -> None:
        space = scratch.acquire("job-1")
        space.pages_dir.rmdir()

        assert space.release()
        assert not space.path.exists()

    def test_context_manager_releases_on_error(self, scratch: ScratchManager) -> None:
        with pytest.raises(RuntimeError):
            with scratch.acquire("job-1") as space:
                space.write_source(b"%PDF-1.4")
                raise RuntimeError("boom")

        assert not space.path.exists()
        assert scratch.active_jobs() == []

    def test_output_paths_outside_job_directories(self, scratch: ScratchManager) -> None:
        raw = scratch.output_path("abc")
        cleaned = scratch.output_path("abc", "cleaned")

        assert raw.name == "abc.txt"
        assert cleaned.name == "abc.cleaned.txt"
        assert raw.parent == scratch.outputs_dir
        assert scratch.outputs_dir.is_dir()

    def test_remove_output_tolerates_missing_file(self, scratch: ScratchManager) -> None:
        path = scratch.output_path("abc")
        path.write_text("x", encoding="utf-8")

        scratch.remove_output(path)
        scratch.remove_output(path)
        scratch.remove_output(None)

        assert not path.exists()
