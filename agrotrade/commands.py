import click
import random
from datetime import date, timedelta
from flask.cli import with_appcontext
from agrotrade.extensions import db
from agrotrade.models.biz import Product, Partner
from agrotrade.models.stock import Warehouse, Stock, InventoryLot, LotMatch, InventoryLog
from agrotrade.models.trade import TradeDocument
from agrotrade.models.finance import CashTransaction, PeriodClosing
from agrotrade.services.inventory_service import InventoryQueryService
from agrotrade.services.trade_service import TradeService
from agrotrade.utils.fake_gen import fake


@click.command('status')
@with_appcontext
def status():
    """
    [验证指令] 查看当前数据库中的数据统计。
    """
    click.echo(click.style('📊 库存账本数据库状态:', fg='cyan', bold=True))

    try:
        p_count = Product.query.count()
        d_count = TradeDocument.query.count()
        lot_count = InventoryLot.query.count()
        m_count = LotMatch.query.count()
        l_count = InventoryLog.query.count()
        c_count = PeriodClosing.query.count()

        click.echo(f" - 产品 (Products): \t{p_count}")
        click.echo(f" - 单据 (Documents): \t{d_count}")
        click.echo(f" - 批次 (Lots): \t{lot_count}")
        click.echo(f" - 匹配 (Matches): \t{m_count}")
        click.echo(f" - 库存流水 (Logs): \t{l_count}")
        click.echo(f" - 结算 (Closings): \t{c_count}")

        if p_count > 0:
            click.echo(click.style('✔ 数据库连接正常，数据已存在。', fg='green'))
        else:
            click.echo(click.style('⚠ 数据库为空，请运行 flask forge 生成数据。', fg='yellow'))

    except Exception as e:
        click.echo(click.style(f'✘ 数据库读取失败: {str(e)}', fg='red'))
        click.echo("请检查是否执行了 'flask db upgrade'")


@click.command('verify-ledger')
@click.option('--product-id', type=int, default=None, help='只校验指定产品')
@with_appcontext
def verify_ledger(product_id):
    """
    [校验指令] 核对汇总库存与批次剩余是否一致，有差异时以非零状态退出。
    """
    report = InventoryQueryService.check_consistency(product_id)
    click.echo(click.style(f'🔍 已校验 {report["checked"]} 个产品', fg='cyan', bold=True))

    for issue in report['products']:
        click.echo(click.style(
            f"✘ 产品 {issue['product_id']}: 汇总 {issue['aggregate']} / 应为 {issue['expected']}", fg='red'))
    for issue in report['lots']:
        click.echo(click.style(
            f"✘ 批次 {issue['lot_id']}: 剩余 {issue['remaining']} / 应为 {issue['expected']}", fg='red'))

    if not report['ok']:
        raise click.exceptions.Exit(1)
    click.echo(click.style('✔ 库存账本一致。', fg='green'))


@click.command('forge')
@click.option('--scale', default=1, help='数据规模倍数 (默认1倍)')
@click.option('--days', default=30, help='模拟交易天数')
@with_appcontext
def forge(scale, days):
    """
    [造物主指令] 生成果蔬批发演示数据，全部交易经过账本服务处理。
    警告：这将清除数据库中的现有数据！
    """
    click.echo(click.style(f'⚡ 初始化演示数据 (规模: {scale}x, {days} 天)...', fg='cyan', bold=True))

    # 1. 清除旧数据
    db.drop_all()
    db.create_all()

    # 2. 基础资料
    click.echo('正在注册仓库、往来单位与产品...')
    products, suppliers, customers = init_reference(scale)

    # 3. 模拟采购与销售
    click.echo('正在回溯历史交易流水 (这可能需要一些时间)...')
    init_trade(products, suppliers, customers, scale, days)

    # 4. 现金流水
    click.echo('正在生成现金流水...')
    init_cash(suppliers + customers, days)

    click.echo(click.style('✔ 演示数据构建完成！', fg='green', bold=True))
    click.echo(f"数据统计: {len(products)}产品, {TradeDocument.query.count()}单据, "
               f"{InventoryLot.query.count()}批次")


def init_reference(scale=1):
    """初始化仓库、伙伴、产品"""
    db.session.add_all([
        Warehouse(name='主仓库', location=fake.address(), is_default=True),
        Warehouse(name='冷库', location=fake.address()),
    ])

    suppliers, customers = [], []
    for _ in range(5 * scale):
        suppliers.append(Partner(name=fake.produce_company(), type=Partner.TYPE_SUPPLIER,
                                 phone=fake.phone_number(), address=fake.address()))
    for _ in range(8 * scale):
        customers.append(Partner(name=fake.produce_company(), type=Partner.TYPE_CUSTOMER,
                                 phone=fake.phone_number(), address=fake.address()))
    db.session.add_all(suppliers + customers)

    products = []
    seen = set()
    for _ in range(10 * scale):
        key = (fake.produce_name(), fake.produce_grade())
        if key in seen:
            continue
        seen.add(key)
        products.append(Product(name=key[0], grade=key[1], unit_weight=fake.box_weight()))
    db.session.add_all(products)
    db.session.commit()
    click.echo(f'  ✓ 已创建 {len(products)} 个产品, {len(suppliers)} 个供应商, {len(customers)} 个客户')
    return products, suppliers, customers


def init_trade(products, suppliers, customers, scale=1, days=30):
    """按日期先后生成采购与销售单据 (销售量不超过采购量的 80%)"""
    start = date.today() - timedelta(days=days)
    doc_count = 0
    for offset in range(days):
        trade_date = start + timedelta(days=offset)

        lines = []
        for product in random.sample(products, k=min(len(products), 3)):
            lines.append({
                'product_id': product.id,
                'quantity': random.randint(20, 100) * scale,
                'unit_price': round(random.uniform(20, 200), 2),
                'sender': fake.sender_name(),
                'origin': fake.produce_origin(),
            })
        TradeService.create_document(TradeDocument.TYPE_PURCHASE, trade_date=trade_date,
                                     partner_id=random.choice(suppliers).id, lines=lines)
        doc_count += 1

        sale_lines = []
        for item in lines:
            stock = Stock.query.filter_by(product_id=item['product_id']).first()
            available = int(stock.quantity) if stock else 0
            if available <= 0:
                continue
            sale_lines.append({
                'product_id': item['product_id'],
                'quantity': max(1, int(available * random.uniform(0.3, 0.8))),
                'unit_price': round(item['unit_price'] * random.uniform(1.1, 1.4), 2),
            })
        if sale_lines:
            TradeService.create_document(TradeDocument.TYPE_SALE, trade_date=trade_date,
                                         partner_id=random.choice(customers).id, lines=sale_lines)
            doc_count += 1
    click.echo(f'  ✓ 已创建 {doc_count} 张单据')


def init_cash(partners, days=30):
    """生成收付款与费用流水"""
    start = date.today() - timedelta(days=days)
    for _ in range(days * 2):
        db.session.add(CashTransaction(
            transaction_type=random.choice([CashTransaction.TYPE_RECEIPT, CashTransaction.TYPE_PAYMENT,
                                            CashTransaction.TYPE_EXPENSE]),
            transaction_date=start + timedelta(days=random.randint(0, days - 1)),
            partner_id=random.choice(partners).id,
            amount=round(random.uniform(100, 5000), 2),
            remark=fake.sentence(nb_words=6)
        ))
    db.session.commit()
