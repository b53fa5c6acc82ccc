"""
Storefront — 単一ベンダー EC ストアフロント

カタログ・カート・チェックアウト・オペレーターコンソールを
サーバーサイドのセッションとして提供する。
"""

__version__ = "0.1.0"
