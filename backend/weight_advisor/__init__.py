"""
权重方法推荐系统
"""
__version__ = "1.0.0"
