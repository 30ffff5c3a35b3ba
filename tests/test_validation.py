"""
Unit tests for input validation
"""
import pytest
from pydantic import ValidationError

from topokorea.rest_api import GenerateRequest


class TestDatasetValidation:
    """Test dataset name validation"""

    def test_valid_names(self):
        req = GenerateRequest(datasets=["37612001", "NGII_sheet-2"])
        assert req.datasets == ["37612001", "NGII_sheet-2"]

    def test_empty_list(self):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=[])

    def test_too_many(self):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=[f"sheet{i}" for i in range(21)])

    @pytest.mark.parametrize("name", ["../etc", "a/b", "", "sheet 1", "..", "C:\\data"])
    def test_path_like_names_rejected(self, name):
        with pytest.raises(ValidationError) as exc_info:
            GenerateRequest(datasets=[name])
        assert "dataset" in str(exc_info.value).lower()


class TestTerrainOptions:
    """Test resolution and contour interval bounds"""

    def test_defaults(self):
        req = GenerateRequest(datasets=["37612001"])
        assert req.resolution == 0
        assert req.z_interval == 10
        assert req.roof_type == "flat"
        assert req.remove_under_area == 0.0
        assert req.include_buildings is True

    @pytest.mark.parametrize("resolution", [-1, 21])
    def test_resolution_out_of_range(self, resolution):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=["37612001"], resolution=resolution)

    @pytest.mark.parametrize("z_interval", [0, 101])
    def test_interval_out_of_range(self, z_interval):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=["37612001"], z_interval=z_interval)

    def test_interval_limits(self):
        assert GenerateRequest(datasets=["a"], z_interval=1).z_interval == 1
        assert GenerateRequest(datasets=["a"], z_interval=100).z_interval == 100


class TestBuildingOptions:
    """Test roof type and area filter"""

    def test_parapet(self):
        assert GenerateRequest(datasets=["a"], roof_type="parapet").roof_type == "parapet"

    def test_unknown_roof_type(self):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=["a"], roof_type="gable")

    def test_negative_area(self):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=["a"], remove_under_area=-1.0)


class TestOutputName:
    """Test output file name validation"""

    def test_valid_name(self):
        assert GenerateRequest(datasets=["a"], output_name="my site.ifc").output_name == "my site.ifc"

    @pytest.mark.parametrize("name", ['a"b.ifc', "../x.ifc", "x\r\nSet-Cookie: y"])
    def test_header_breaking_names(self, name):
        with pytest.raises(ValidationError):
            GenerateRequest(datasets=["a"], output_name=name)
