import json
import re

import numpy as np
import pytest
from PIL import Image

from pixel_cli import (
    ConfigValidationError,
    build_settings,
    detect_mode,
    load_config,
    main,
    make_rng,
    process_folder,
    process_single_image,
    validate_config,
    validate_settings,
)
from pixelart_lib import PixelArtSettings


def job(tmp_path, input_path, output_name="out.png", **extra):
    config = {"input": str(input_path), "output": str(tmp_path / output_name)}
    config.update(extra)
    return validate_config(config, tmp_path / "config.json")


def write_config(tmp_path, config):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


# -------------------- validation --------------------

def test_missing_required_fields(tmp_path):
    with pytest.raises(ConfigValidationError) as excinfo:
        validate_config({}, tmp_path / "config.json")
    assert "'input'" in str(excinfo.value)
    assert "'output'" in str(excinfo.value)


def test_config_must_be_object(tmp_path):
    with pytest.raises(ConfigValidationError):
        validate_config(["input.png"], tmp_path / "config.json")


@pytest.mark.parametrize("extra", [
    {"mode": "video"},
    {"settings": []},
    {"settings": {"quantization_method": "popularity"}},
    {"settings": {"pixelSize": "big"}},
    {"settings": {"sharpness": 3}},
    {"max_size": 0},
    {"seed": "abc"},
    {"final_resize": {"multiplier": -2}},
])
def test_invalid_fields_are_reported(tmp_path, png_file, extra):
    config = {"input": str(png_file), "output": "out.png"}
    config.update(extra)
    with pytest.raises(ConfigValidationError):
        validate_config(config, tmp_path / "config.json")


def test_validate_settings_accepts_camel_case_and_aliases():
    errors = validate_settings({"quantizationMethod": "KMeans", "colorCount": "12",
                                "palette_swap": "gray", "edgeDetection": "canny"})
    assert errors == []


def test_simple_is_not_an_edge_method():
    assert validate_settings({"edge_detection": "simple"})
    assert validate_settings({"outline_detection": "simple"}) == []


@pytest.mark.parametrize("value", ["inf", "-Infinity", "nan", float("inf"), 1e400])
def test_non_finite_numbers_are_rejected(value):
    errors = validate_settings({"colorCount": value})
    assert errors == ["'settings.colorCount' must be a finite number"]


def test_output_defaults_to_last_save_dir(tmp_path, png_file):
    saved = tmp_path / "saved"
    config = validate_config({"input": str(png_file)}, tmp_path / "config.json",
                             default_output_dir=str(saved))
    assert config["output"] == str(saved / "input_pixel.png")


def test_folder_output_defaults_to_last_save_dir(tmp_path):
    src = tmp_path / "frames"
    src.mkdir()
    config = validate_config({"input": str(src)}, tmp_path / "config.json",
                             default_output_dir=str(tmp_path / "saved"))
    assert config["output"] == str(tmp_path / "saved" / "frames_pixel")


def test_missing_input_is_reported(tmp_path):
    with pytest.raises(ConfigValidationError, match="not found"):
        validate_config({"input": "nope.png", "output": "out.png"}, tmp_path / "config.json")


def test_relative_paths_resolve_against_config_dir(tmp_path, png_file):
    config = validate_config({"input": png_file.name, "output": "sub/out.png",
                              "palette_output": "pal.json"}, tmp_path / "config.json")
    assert config["input"] == str(png_file.resolve())
    assert config["output"] == str((tmp_path / "sub" / "out.png").resolve())
    assert config["palette_output"] == str((tmp_path / "pal.json").resolve())
    assert config["mode"] is None
    assert config["final_resize"] == {"enabled": False, "multiplier": 2}


def test_load_config_rejects_bad_json(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigValidationError, match="Invalid JSON"):
        load_config(path)


def test_detect_mode(tmp_path, png_file):
    assert detect_mode(tmp_path) == "folder"
    assert detect_mode(png_file) == "image"
    with pytest.raises(ConfigValidationError):
        detect_mode(tmp_path / "notes.txt")


def test_build_settings_layers_job_over_defaults():
    defaults = PixelArtSettings(pixel_size=6, color_count=12)
    settings = build_settings({"settings": {"colorCount": 5}}, defaults)
    assert settings.pixel_size == 6
    assert settings.color_count == 5


def test_make_rng():
    assert make_rng(None) is None
    a = make_rng(3).integers(0, 1000, size=5)
    b = make_rng(3).integers(0, 1000, size=5)
    assert np.array_equal(a, b)


# -------------------- processing --------------------

def test_process_single_image_writes_output(tmp_path, png_file):
    config = job(tmp_path, png_file, settings={"pixel_size": 4, "quantization_method": "octree",
                                               "color_count": 6})
    assert process_single_image(config)
    with Image.open(tmp_path / "out.png") as img:
        assert img.size == (60, 40)
        arr = np.array(img)
    # 4x4 blocks
    block = arr[4:8, 8:12].reshape(-1, 3)
    assert np.all(block == block[0])


def test_process_single_image_final_resize(tmp_path, png_file):
    config = job(tmp_path, png_file, final_resize={"enabled": True, "multiplier": 3})
    assert process_single_image(config)
    with Image.open(tmp_path / "out.png") as img:
        assert img.size == (180, 120)


def test_process_single_image_caps_size(tmp_path, png_file):
    config = job(tmp_path, png_file, max_size=30)
    assert process_single_image(config)
    with Image.open(tmp_path / "out.png") as img:
        assert img.size == (30, 20)


def test_palette_export(tmp_path, png_file):
    config = job(tmp_path, png_file, palette_output=str(tmp_path / "palette.json"),
                 settings={"quantization_method": "median-cut", "color_count": 4})
    assert process_single_image(config)
    data = json.loads((tmp_path / "palette.json").read_text(encoding="utf-8"))
    assert data[0]["name"] == "input"
    assert 1 <= len(data[0]["colors"]) <= 4
    for code in data[0]["colors"]:
        assert re.fullmatch(r"#[0-9a-f]{6}", code)


def test_unreadable_image_fails_cleanly(tmp_path):
    broken = tmp_path / "broken.png"
    broken.write_bytes(b"not a png")
    config = job(tmp_path, broken)
    assert process_single_image(config) is False
    assert not (tmp_path / "out.png").exists()


def test_process_folder(tmp_path):
    src = tmp_path / "frames"
    src.mkdir()
    rng = np.random.default_rng(5)
    for name in ("b.png", "a.jpg"):
        Image.fromarray(rng.integers(0, 256, size=(16, 20, 3), dtype=np.uint8)).save(src / name)
    (src / "readme.txt").write_text("skip me", encoding="utf-8")

    config = validate_config({"input": str(src), "output": str(tmp_path / "pixels")},
                             tmp_path / "config.json")
    assert process_folder(config, PixelArtSettings(pixel_size=4))
    assert sorted(p.name for p in (tmp_path / "pixels").iterdir()) == ["a_pixel.png", "b_pixel.png"]


def test_empty_folder_fails(tmp_path):
    src = tmp_path / "empty"
    src.mkdir()
    config = validate_config({"input": str(src), "output": str(tmp_path / "out")},
                             tmp_path / "config.json")
    assert process_folder(config) is False


# -------------------- entry point --------------------

def test_main_processes_image(tmp_path, png_file):
    config_path = write_config(tmp_path, {
        "input": png_file.name,
        "output": "result.png",
        "settings": {"pixelSize": 5, "quantizationMethod": "k-means", "colorCount": 3},
    })
    with pytest.raises(SystemExit) as excinfo:
        main([str(config_path), "--quiet", "--seed", "9", "--prefs", str(tmp_path / "prefs.json")])
    assert excinfo.value.code == 0
    assert (tmp_path / "result.png").exists()
    # preferences are only written with --remember
    assert not (tmp_path / "prefs.json").exists()


def test_main_remember_stores_defaults(tmp_path, png_file):
    config_path = write_config(tmp_path, {
        "input": str(png_file),
        "output": str(tmp_path / "result.png"),
        "settings": {"pixel_size": 3, "palette_swap": "sepia"},
    })
    prefs_path = tmp_path / "prefs.json"
    with pytest.raises(SystemExit) as excinfo:
        main([str(config_path), "-q", "--prefs", str(prefs_path), "--remember"])
    assert excinfo.value.code == 0
    stored = json.loads(prefs_path.read_text(encoding="utf-8"))
    assert stored["defaults"]["settings"]["pixel_size"] == 3
    assert stored["defaults"]["settings"]["palette_swap"] == "sepia"
    assert stored["recent_files"] == [str(png_file)]


def test_main_without_config_exits_with_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", "--prefs", str(tmp_path / "prefs.json")])
    assert excinfo.value.code == 1


def test_main_with_invalid_config_exits_with_error(tmp_path, png_file):
    config_path = write_config(tmp_path, {"input": str(png_file)})
    with pytest.raises(SystemExit) as excinfo:
        main([str(config_path), "-q", "--prefs", str(tmp_path / "prefs.json")])
    assert excinfo.value.code == 1


@pytest.mark.parametrize("flag", ["--help", "--example-config"])
def test_informational_flags_exit_cleanly(flag):
    with pytest.raises(SystemExit) as excinfo:
        main([flag])
    assert excinfo.value.code == 0


def test_main_rejects_infinite_setting(tmp_path, png_file):
    # json.dumps writes float("inf") as the bare Infinity token
    config_path = write_config(tmp_path, {
        "input": str(png_file),
        "output": str(tmp_path / "result.png"),
        "settings": {"color_count": float("inf")},
    })
    with pytest.raises(SystemExit) as excinfo:
        main([str(config_path), "-q", "--prefs", str(tmp_path / "prefs.json")])
    assert excinfo.value.code == 1
    assert not (tmp_path / "result.png").exists()


def test_main_uses_remembered_save_dir(tmp_path, png_file):
    prefs_path = tmp_path / "prefs.json"
    saved = tmp_path / "saved"
    prefs_path.write_text(json.dumps({"paths": {"last_save_dir": str(saved)}}), encoding="utf-8")
    config_path = write_config(tmp_path, {"input": str(png_file), "settings": {"pixel_size": 2}})
    with pytest.raises(SystemExit) as excinfo:
        main([str(config_path), "-q", "--prefs", str(prefs_path)])
    assert excinfo.value.code == 0
    assert (saved / "input_pixel.png").exists()


def test_recent_listing_and_clearing(tmp_path, png_file, capsys):
    prefs_path = tmp_path / "prefs.json"
    prefs_path.write_text(json.dumps({"recent_files": [str(png_file), str(tmp_path / "gone.png")]}),
                          encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["--recent", "--prefs", str(prefs_path)])
    assert excinfo.value.code == 0
    # long paths may be folded across lines
    out = capsys.readouterr().out.replace("\n", "")
    assert "input.png" in out
    assert "gone.png" not in out

    with pytest.raises(SystemExit) as excinfo:
        main(["--clear-recent", "--prefs", str(prefs_path)])
    assert excinfo.value.code == 0
    assert json.loads(prefs_path.read_text(encoding="utf-8"))["recent_files"] == []
