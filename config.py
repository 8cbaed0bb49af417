import os
from dotenv import load_dotenv

# 加载 .env 环境变量
load_dotenv()
basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    """基础配置类"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hard-to-guess-string'

    # 数据库配置
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_RECORD_QUERIES = True

    # JSON API 不使用 CSRF 令牌
    WTF_CSRF_ENABLED = False

    # 库存账本配置
    # compensate: 撤销明细时追加冲销流水; prune: 直接删除该明细的流水
    LEDGER_HISTORY_MODE = os.environ.get('LEDGER_HISTORY_MODE', 'compensate')
    # 销售明细保存时是否立即执行先进先出匹配
    AUTO_MATCH_SALES = os.environ.get('AUTO_MATCH_SALES', 'true').lower() in ('1', 'true', 'yes')
    # 结算对账容差
    RECONCILIATION_TOLERANCE = os.environ.get('RECONCILIATION_TOLERANCE', '0.01')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    @staticmethod
    def init_app(app):
        # 确保 instance 目录存在 (SQLite 文件)
        os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)


class DevelopmentConfig(Config):
    """开发环境配置"""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'agrotrade.db')


class ProductionConfig(Config):
    """生产环境配置"""
    DEBUG = False

    DATABASE_URL = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'agrotrade_prod.db')
    # PostgreSQL URL 修正
    if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = DATABASE_URL

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_RECORD_QUERIES = False

    @staticmethod
    def init_app(app):
        pass


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
