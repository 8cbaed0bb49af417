import logging
import colorlog
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from config import config
from agrotrade.extensions import db, migrate, csrf
from agrotrade.exceptions import LedgerError

# 导入 commands 模块，用于注册 CLI 命令
from agrotrade import commands


def create_app(config_name='default'):
    """果蔬批发库存账本 应用工厂函数"""
    app = Flask(__name__)

    # 1. 加载配置
    app.config.from_object(config[config_name])
    config[config_name].init_app(app)

    # 2. 初始化扩展
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)

    # 3. 配置日志
    configure_logging(app)

    # 4. 注册蓝图 (Blueprints)
    register_blueprints(app)

    # 5. 注册全局错误处理
    register_error_handlers(app)

    # 6. 注册 CLI 命令
    register_commands(app)

    return app


def register_blueprints(app):
    """注册业务模块蓝图 (JSON API，不使用 CSRF 令牌)"""
    # 库存、匹配、调整、调拨、加工
    from agrotrade.blueprints.inventory import inventory_bp
    csrf.exempt(inventory_bp)
    app.register_blueprint(inventory_bp, url_prefix='/inventory')

    # 交易单据
    from agrotrade.blueprints.trade import trade_bp
    csrf.exempt(trade_bp)
    app.register_blueprint(trade_bp, url_prefix='/trade')

    # 期间结算
    from agrotrade.blueprints.settlement import settlement_bp
    csrf.exempt(settlement_bp)
    app.register_blueprint(settlement_bp, url_prefix='/settlement')


def register_error_handlers(app):
    @app.errorhandler(LedgerError)
    def ledger_error(e):
        return jsonify(e.to_dict()), e.code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({'success': False, 'code': e.code, 'message': e.description}), e.code

    @app.errorhandler(500)
    def internal_server_error(e):
        app.logger.error(f"服务器内部错误: {e}")
        return jsonify({'success': False, 'code': 500, 'message': '服务器内部错误'}), 500


def register_commands(app):
    """注册 Flask CLI 命令"""
    app.cli.add_command(commands.status)
    app.cli.add_command(commands.verify_ledger)
    app.cli.add_command(commands.forge)


def configure_logging(app):
    """配置彩色控制台日志，提升开发体验"""
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    if app.debug:
        handler = logging.StreamHandler()
        handler.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

        formatter = colorlog.ColoredFormatter(
            "%(log_color)s[%(asctime)s] %(levelname)-8s%(reset)s %(blue)s%(message)s",
            datefmt="%H:%M:%S",
            reset=True,
            log_colors={
                'DEBUG':    'cyan',
                'INFO':     'green',
                'WARNING':  'yellow',
                'ERROR':    'red',
                'CRITICAL': 'red,bg_white',
            },
            style='%'
        )
        handler.setFormatter(formatter)
        app.logger.addHandler(handler)
