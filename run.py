import os
from agrotrade import create_app, db
from agrotrade.models import (
    Product, Partner, Warehouse, Stock, InventoryLot, LotMatch, InventoryLog,
    InventoryAdjustment, LotAdjustment, TradeDocument, TradeLine,
    StockTransfer, TransferRecord, ProductionJob, CashTransaction, PeriodClosing
)

# 从环境变量获取配置模式
config_name = os.getenv('FLASK_ENV') or os.getenv('FLASK_CONFIG') or 'default'
if config_name in ('development', 'dev'):
    config_name = 'development'

app = create_app(config_name)


@app.shell_context_processor
def make_shell_context():
    """
    配置 Flask Shell 上下文。
    允许在命令行中使用 'flask shell' 时自动导入 db 和模型。
    """
    return dict(
        db=db,
        app=app,
        Product=Product,
        Partner=Partner,
        Warehouse=Warehouse,
        Stock=Stock,
        InventoryLot=InventoryLot,
        LotMatch=LotMatch,
        InventoryLog=InventoryLog,
        InventoryAdjustment=InventoryAdjustment,
        LotAdjustment=LotAdjustment,
        TradeDocument=TradeDocument,
        TradeLine=TradeLine,
        StockTransfer=StockTransfer,
        TransferRecord=TransferRecord,
        ProductionJob=ProductionJob,
        CashTransaction=CashTransaction,
        PeriodClosing=PeriodClosing,
    )


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000)
