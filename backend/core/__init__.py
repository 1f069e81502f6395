"""
core - 配额引擎核心层

独立于框架与持久化，包含：
- allotment: 房型配额引擎（数据模型、每日记录、预订、分配规则、分析、渠道同步）
- scheduler: 调度器后端接口
"""
