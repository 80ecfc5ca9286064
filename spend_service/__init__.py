"""
Spenddy 数据集服务
将各平台导出的订单历史（外卖 / 生鲜 / 到店）统一为规范化记录，
计算汇总数据集，并通过两级存储缓存供 UI 层按来源标识读取

架构分层：
  采集层     (Acquisition)  → 读取外部采集代理写入的原始 JSON（Redis / 目录）
  缓存层     (Cache)        → 持久化缓存 raw / records / aggregate（MongoDB / 文件）
  处理层     (Processing)   → 汇总统计
  分析层     (Analysis)     → 月度 / 商家 / 时段分布
"""

__version__ = "1.0.0"
