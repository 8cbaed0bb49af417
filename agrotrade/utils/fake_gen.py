from faker import Faker
from faker.providers import BaseProvider


class ProduceProvider(BaseProvider):
    """
    果蔬批发专用数据生成器
    生成产品名、等级、产地、出荷主等
    """

    produce_names = [
        '番茄', '黄瓜', '白菜', '土豆', '洋葱', '胡萝卜', '青椒', '茄子',
        '苹果', '香梨', '柑橘', '葡萄', '草莓', '西瓜', '哈密瓜', '猕猴桃'
    ]

    grades = ['特级', '一级', '二级', 'L', 'M', 'S']

    # 产地
    origins = [
        '山东寿光', '河北张家口', '云南元谋', '海南三亚', '新疆吐鲁番',
        '陕西洛川', '四川眉山', '辽宁丹东', '甘肃定西', '福建漳州'
    ]

    market_suffixes = ['果蔬批发', '农产品合作社', '生鲜配送', '蔬菜基地', '果业']

    def produce_name(self):
        return self.random_element(self.produce_names)

    def produce_grade(self):
        return self.random_element(self.grades)

    def produce_origin(self):
        return self.random_element(self.origins)

    def produce_company(self):
        """生成批发商/合作社名称"""
        return f"{self.generator.city_name()}{self.random_element(self.market_suffixes)}"

    def sender_name(self):
        """出荷主 (发货农户/合作社)"""
        return f"{self.generator.last_name()}{self.random_element(['农场', '合作社', '家庭农场'])}"

    def box_weight(self):
        """单箱重量 (kg)"""
        return self.random_element([5, 8, 10, 12.5, 15, 20])


# 初始化 Faker 并添加自定义 Provider
fake = Faker('zh_CN')
fake.add_provider(ProduceProvider)
