import pytest

from src.main import (
    LoadParams,
    SelectionParams,
    TransformParams,
    load_inputs,
    prepare_trend_data,
)
from src.models import ModelParams, fit_trend_models
from synthetic_data import make_names, make_samples, write_inputs


@pytest.fixture(scope="session")
def input_files(tmp_path_factory):
    root = tmp_path_factory.mktemp("inputs")
    return write_inputs(root, make_samples(), make_names())


@pytest.fixture(scope="session")
def load_params(input_files) -> LoadParams:
    samples_path, names_path = input_files
    return LoadParams(samples_path=samples_path, names_path=names_path)


@pytest.fixture(scope="session")
def loaded(load_params):
    return load_inputs(load_params)


@pytest.fixture(scope="session")
def trend(loaded):
    return prepare_trend_data(loaded, SelectionParams(), TransformParams())


@pytest.fixture(scope="session")
def models(trend):
    return fit_trend_models(trend.core_months_data, ModelParams())
