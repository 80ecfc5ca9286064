"""
数据流分层架构
  Layer 1 – Acquisition  : 采集存储读取（Redis → 采集目录）
  Layer 2 – Cache        : 持久化缓存（MongoDB → 文件），raw / records / aggregate 三个子键
  Layer 3 – Processing   : 汇总数据集、时间范围过滤
  Layer 4 – Analysis     : 消费分布统计
"""
