"""
应用配置管理
"""
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """应用配置"""

    # 应用基础配置
    APP_NAME: str = "权重方法推荐系统"
    DEBUG: bool = False

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False  # 是否输出JSON格式日志（生产环境建议开启）

    # CORS配置
    CORS_ORIGINS: str = "http://localhost,http://localhost:80,http://localhost:3000,http://localhost:5173"  # 逗号分隔的字符串

    def get_cors_origins(self) -> List[str]:
        """获取CORS允许的来源列表"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    # LLM调用配置
    USE_LLM: bool = True  # 关闭后所有阶段直接使用备用结果
    LLM_USE_PROXY: bool = False  # 是否通过代理转发（代理负责构造各厂商请求体）
    LLM_PROXY_URL: str = "http://localhost:3000/api/llm"
    DEFAULT_MODEL_TYPE: str = "deepseek"  # deepseek, openai, qwen
    MULTI_API_ENABLED: bool = True  # 是否启用多API配置并行处理
    LLM_MAX_TOKENS: int = 4000
    LLM_REQUEST_TIMEOUT: float = 60.0  # 单次调用超时（秒）
    LLM_RETRY_ATTEMPTS: int = 2  # 429/5xx/超时的最大尝试次数

    # API密钥配置（环境变量）
    DEEPSEEK_API_KEY: str = ""
    DEEPSEEK_API_KEY_2: str = ""
    DEEPSEEK_API_KEY_3: str = ""
    OPENAI_API_KEY: str = ""
    OPENAI_API_KEY_2: str = ""
    OPENAI_API_KEY_3: str = ""
    QWEN_API_KEY: str = ""
    QWEN_API_KEY_2: str = ""
    QWEN_API_KEY_3: str = ""

    # 本地密钥配置（优先于环境变量）
    USE_LOCAL_API_KEYS: bool = False
    LOCAL_API_KEYS: Dict[str, str] = {}  # 形如 {"DEEPSEEK_API_KEY": "...", "DEEPSEEK_API_KEY_2": "..."}

    # 推荐流程配置
    RUN_KICKOFF_DELAY_MS: int = 300  # 启动分析前的防抖延迟
    WEIGHT_METHODS_PATH: Optional[str] = None  # 自定义权重方法库路径，为空时使用内置方法库

    # AI Mock配置（测试环境）
    ENABLE_AI_MOCK: bool = False  # 是否启用AI Mock（生产环境必须为False）
    AI_MOCK_FAILURE_TYPE: str = "server_error"  # 失败类型：timeout, rate_limit, server_error, network_error, unauthorized, bad_request, service_unavailable
    AI_MOCK_FAILURE_PROBABILITY: float = 0.0  # 失败概率（0.0-1.0）

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
