import logging

import numpy as np
import scipy
from geopcga import __version__
from geopcga.utils import StrEnum, show_versions


def test_show_versions(caplog) -> None:
    caplog.set_level(logging.INFO)
    show_versions(logging.getLogger("VERSIONS"))
    assert f"Current version = {__version__}" in caplog.text
    assert np.__version__ in caplog.text
    assert scipy.__version__ in caplog.text


class Colors(StrEnum):
    RED = "red"
    BLUE = "blue"


def test_str_enum() -> None:
    assert str(Colors.RED) == "red"
    assert Colors.RED == "red"
    assert Colors("blue") is Colors.BLUE
    assert Colors.to_list() == ["red", "blue"]
