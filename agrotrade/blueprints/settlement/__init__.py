from flask import Blueprint

settlement_bp = Blueprint('settlement', __name__)

from . import routes
