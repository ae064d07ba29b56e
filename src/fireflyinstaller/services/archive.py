"""Archive extraction helpers for FireflyInstaller."""

import os
import shutil
import tarfile
import zipfile
from pathlib import Path

from fireflyinstaller.errors import InstallerError, UnsupportedFormat
from fireflyinstaller.errors_catalog import actionable_error


class ArchiveService:
    """Encapsulates safe archive extraction logic."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    def extract(self, archive_path: str, destination_dir: str, flatten: bool = True) -> str:
        lowered = archive_path.lower()
        os.makedirs(destination_dir, exist_ok=True)
        if lowered.endswith(".zip"):
            self.safe_extract_zip(archive_path, destination_dir)
        elif lowered.endswith((".tar.gz", ".tgz")):
            self.safe_extract_tar(archive_path, destination_dir)
        else:
            raise UnsupportedFormat(actionable_error("unsupported_archive", path=archive_path))

        if flatten:
            self.flatten_single_root(destination_dir)
        return destination_dir

    def safe_extract_zip(self, zip_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with zipfile.ZipFile(zip_path, "r") as zip_ref:
                for member in zip_ref.infolist():
                    target_path = (base / member.filename.replace("\\", "/")).resolve()

                    if not self.is_within_dir(base, target_path):
                        raise InstallerError(
                            f"Unsafe ZIP entry detected: `{member.filename}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )

                    file_type = (member.external_attr >> 16) & 0o170000
                    if file_type == 0o120000:
                        raise InstallerError(f"Unsafe ZIP entry detected: `{member.filename}` is a symbolic link.")

                for member in zip_ref.infolist():
                    normalized_name = member.filename.replace("\\", "/")
                    target_path = (base / normalized_name).resolve()

                    if member.is_dir() or normalized_name.endswith("/"):
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    with zip_ref.open(member, "r") as src, open(target_path, "wb") as dst:
                        shutil.copyfileobj(src, dst)

                    mode = (member.external_attr >> 16) & 0o777
                    if mode:
                        os.chmod(target_path, mode)
        except zipfile.BadZipFile as exc:
            raise InstallerError(f"Invalid ZIP archive: {zip_path}") from exc

    def safe_extract_tar(self, tar_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with tarfile.open(tar_path, "r:gz") as tar_ref:
                members = tar_ref.getmembers()
                for member in members:
                    target_path = (base / member.name).resolve()
                    if not self.is_within_dir(base, target_path):
                        raise InstallerError(
                            f"Unsafe TAR entry detected: `{member.name}`. "
                            "Archive extraction aborted to prevent path traversal."
                        )
                    if member.issym() or member.islnk():
                        raise InstallerError(f"Unsafe TAR entry detected: `{member.name}` is a link.")
                    if not (member.isfile() or member.isdir()):
                        raise InstallerError(f"Unsafe TAR entry detected: `{member.name}` is a special file.")

                for member in members:
                    target_path = (base / member.name).resolve()
                    if member.isdir():
                        target_path.mkdir(parents=True, exist_ok=True)
                        continue

                    target_path.parent.mkdir(parents=True, exist_ok=True)
                    source = tar_ref.extractfile(member)
                    if source is None:
                        continue
                    with source, open(target_path, "wb") as dst:
                        shutil.copyfileobj(source, dst)
                    os.chmod(target_path, member.mode & 0o777)
        except (tarfile.TarError, EOFError) as exc:
            raise InstallerError(f"Invalid TAR archive: {tar_path}") from exc

    def flatten_single_root(self, destination_dir: str):
        entries = [entry for entry in os.listdir(destination_dir) if not entry.startswith("__MACOSX")]
        if len(entries) != 1:
            return

        wrapper = os.path.join(destination_dir, entries[0])
        if not os.path.isdir(wrapper) or os.path.islink(wrapper):
            return

        for item in os.listdir(wrapper):
            shutil.move(os.path.join(wrapper, item), os.path.join(destination_dir, item))
        os.rmdir(wrapper)
