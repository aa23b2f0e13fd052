"""
提示词模板

脑爆阶段：用户原话直接作为提示词；选择了思考框架时，附带模型自我介绍 + 框架说明作为系统提示词。
初稿阶段：把用户原话与某个模型的脑爆内容按写作风格融合成一篇口语化文章。
"""
from typing import Optional

from lazywriter.models import ThinkingFramework, WritingStyle


MARKDOWN_REQUIREMENTS = """输出格式要求（严格遵守，流式输出尤其重要）：
- 使用标准 Markdown 语法
- 标题标记（# ## ###）后必须有一个空格，标题后必须换行
- 列表标记（- * +）必须在行首
- 不要在同一行输出多个标题
- 每个语义单元之间保持适当换行"""


FRAMEWORK_PROMPTS = {
    ThinkingFramework.OMNITHINK: """你现在是OmniThink写作引擎：模拟顶级作者的"扩展→反思→迭代"全过程。
1. 信息扩展：列出相关知识点、案例、反例、二阶影响。
2. 反思整合：MECE分类，找出最稀缺、最有洞见的点。
3. 构建信息树：Why → How → Warning → Metric。
4. 输出极简大纲，再按大纲写出高信息密度的内容。""",
    ThinkingFramework.MIMENG_NLP: """你是情绪文案大师：模式中断 → 植入心锤 → 路径引导 → 情绪闭环。
开头制造共鸣，中间读心并重新定义问题，情绪层层递进，结尾用一句金句收束。""",
    ThinkingFramework.FIRST_PRINCIPLES: """严格使用第一性原理分析这个问题：
1. 拆解到最基本、不可再分的事实。
2. 列出常见假设并逐一证明或证伪。
3. 只用确认的底层事实从零重构最优解。
4. 推演最坏与最好情况，给出二阶影响。
5. 用一句金句总结。""",
    ThinkingFramework.RAPID_DECISION: """用第一性原理暴力破局当前困境，冷酷、直接、无安慰：
1. 列出5-8条不可辩驳的底层事实。
2. 拆穿看似正确实则浪费资源的"局部熵减路径"。
3. 重新组装一条反脆弱、高杠杆的新路径。
4. 给出立即可执行的3步行动和量化指标。""",
    ThinkingFramework.BEZOS_MEMO: """你是亚马逊叙事备忘录专家，遵循"6-Page Narrative Memo"原则：
用连贯的叙事段落（不要 bullet points）依次写出：引言与背景、问题深度剖析、提出的方案、
执行计划、影响评估、常见问题。语言清晰、数据驱动、逻辑严密。""",
    ThinkingFramework.REGRET_MINIMIZATION: """你是遗憾最小化决策教练，按以下步骤分析这个决策：
1. 投影到80岁视角，比较"没尝试"和"尝试但失败"的遗憾。
2. 对比短期与长期遗憾。
3. 反事实思考：如果不会彻底失败，会选哪个？
4. 区分恐惧与理性风险。
5. 给出推荐、行动路径和一句总结。""",
    ThinkingFramework.SYSTEMS_THINKING: """你是系统思考架构师。用系统镜头分析这个问题：
识别组件与边界，映射关系与反馈回路，识别模式与时间延迟，整合多方视角，
找出高杠杆点，推演二阶/三阶效应，最后给出干预策略与行动路线图。""",
    ThinkingFramework.MINIMAL_READER_LOAD: """你是"读者第一"的内容创作者：
短句为主，每段不超过4行；每段给读者一个小奖励（金句、反差、共鸣）；
多用例子和画面感，少用抽象概念。""",
}

ORIGINAL_FRAMEWORK = """请你：
1. 原汁原味地理解用户的表达
2. 分享你的真实想法、思路、观点、建议
3. 保持专业、友好、有洞见的风格
4. 不要扩写、不要改写、不要帮用户写文章"""


def build_brainstorm_system_prompt(persona: str, framework: ThinkingFramework) -> Optional[str]:
    """脑爆阶段的系统提示词

    默认框架不加系统提示词，保留模型最直接的反应。
    """
    if framework == ThinkingFramework.ORIGINAL:
        return None
    framework_prompt = FRAMEWORK_PROMPTS.get(framework, ORIGINAL_FRAMEWORK)
    return (
        f"{persona}用户会分享他的想法、观点或内容。\n\n"
        f"{framework_prompt}\n\n"
        "注意：不要扩写、不要改写，只需按照这个框架分享你的思考。\n\n"
        f"{MARKDOWN_REQUIREMENTS}\n\n"
        "直接输出你的回应，不要加任何解释或套话。"
    )


LUO_STYLE_FRAMEWORK = """【口语化表达框架】
- 对象化思维：每句话都问"对方能听懂吗？"，让读者全程跟上
- 线性交付：从读者熟悉的起点出发，一步步走到明确的终点
- 选一种信息势能作为主线：难→易、低→高、无→有、非→是
- 多用"你想啊""关键在于""说白了"这样的连接词，像弹幕一样给自己的内容加注释
- 用故事和比喻把抽象投影成具体画面"""


def build_draft_prompt(
    transcript: str,
    brainstorm_content: str,
    model_display_name: str,
    writing_style: WritingStyle = WritingStyle.ORIGINAL,
) -> str:
    """初稿融合提示词：原始想法 + 某个模型的脑爆内容 + 写作风格"""
    style_block = LUO_STYLE_FRAMEWORK if writing_style == WritingStyle.LUO_STYLE else ""
    return f"""【核心任务】
你现在是作者本人，要把自己的初步想法和深度思考融合成一篇口语化、线性表达的文章。
想象你在跟朋友面对面聊天，用说话的方式写出来。

【必须做到】
1. 第一人称，像在录播客或发语音一样自然流动
2. 短句为主，多用"然后""但是""所以""其实"这样的口语连接词
3. 保持 {model_display_name} 的风格：直接、深刻、有洞见、不套话
4. 只整合素材里已有的信息，不扩展、不举例、不脑补
5. 长度控制在两份素材总字数的1.5倍以内
6. 使用 Markdown：口语化的 ## 标题、**加粗** 关键词、多分段

【禁止】
书面语结构（首先/其次/综上所述）、学术腔（本文/笔者）、第三方视角（有人说/XX认为）、
直接引用素材原话、让读者感觉是两段内容拼在一起。

─────────────────────────
【素材1：初步想法】
{transcript}

【素材2：深度思考】
{brainstorm_content}
─────────────────────────
{style_block}

现在，以第一人称、使用 Markdown 格式写出融合后的完整文章（直接开始，不要前言）：
"""
