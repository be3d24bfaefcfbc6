"""领域层模型与协议。

包含：
- models: 上游请求/增量的统一模型。
- conversation: 会话、消息、项目、歌曲的存储模型及 Store 协议。
- events: relay 与客户端之间的流式事件（带标签的联合类型）。
- exceptions: 业务异常类型定义。
"""
