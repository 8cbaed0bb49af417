from functools import wraps
from agrotrade.extensions import db

_DEPTH_KEY = 'ledger_tx_depth'


def transactional(f):
    """
    将 service 方法包装为一个原子事务
    最外层调用负责提交，任何异常整体回滚后重新抛出；
    嵌套调用并入外层事务，不单独提交。
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        session = db.session
        depth = session.info.get(_DEPTH_KEY, 0)
        session.info[_DEPTH_KEY] = depth + 1
        try:
            result = f(*args, **kwargs)
            if depth == 0:
                session.commit()
            return result
        except Exception:
            if depth == 0:
                session.rollback()
            raise
        finally:
            session.info[_DEPTH_KEY] = depth
    return decorated_function
