"""
pytest配置和fixtures
"""
import pytest
import sys
from pathlib import Path

# 添加backend路径和tests路径到sys.path
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))
sys.path.insert(0, str(Path(__file__).parent))

from utils.fake_llm import (  # noqa: E402
    SAMPLE_DATA_FEATURES,
    SAMPLE_QUESTIONNAIRE,
    SAMPLE_USER_NEEDS,
    proxy_config,
    sample_methods,
)


@pytest.fixture
def methods():
    """5个方法的测试方法库"""
    return sample_methods()


@pytest.fixture
def questionnaire():
    """问卷数据"""
    return dict(SAMPLE_QUESTIONNAIRE)


@pytest.fixture
def user_needs():
    """用户需求画像"""
    return dict(SAMPLE_USER_NEEDS)


@pytest.fixture
def data_features():
    """数据特征"""
    return dict(SAMPLE_DATA_FEATURES)


@pytest.fixture
def single_config():
    """单个API配置（顺序执行）"""
    return [proxy_config("default")]


@pytest.fixture
def parallel_configs():
    """三个API配置（并行执行）"""
    return [proxy_config("default"), proxy_config("api2"), proxy_config("api3")]
