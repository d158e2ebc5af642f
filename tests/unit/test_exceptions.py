from buildpatch.core.exceptions import InstallInProgressError, ManifestError, PatchError


def test_patch_error_to_dict():
    err = PatchError(code="test_error", message="Something broke")
    d = err.to_dict()
    assert d["error"]["code"] == "test_error"
    assert d["error"]["message"] == "Something broke"
    assert "details" not in d["error"]


def test_patch_error_with_details():
    err = PatchError(code="x", message="y", details={"hint": "try again"})
    d = err.to_dict()
    assert d["error"]["details"]["hint"] == "try again"


def test_manifest_error_defaults():
    err = ManifestError()
    assert err.code == "invalid_manifest"
    assert str(err) == "Build manifest is invalid."


def test_install_in_progress_error_defaults():
    err = InstallInProgressError(details={"install_dir": "/tmp/x"})
    assert err.code == "install_in_progress"
    assert err.to_dict()["error"]["details"]["install_dir"] == "/tmp/x"
