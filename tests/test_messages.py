from messages import render, resolve_lang


class TestMessages:

    def test_renders_named_placeholders(self):
        assert render('noInviter', {"nickname": "Tom"}, 'en-US') == \
            'Member【Tom】has no inviter, cannot automatically assign a group'
        assert render('group.capacityExceeded', {"groupId": 3, "maxMembers": 200}, 'zh-CN') == \
            '群组(ID:3)成员数已达到上限（200人）'

    def test_unknown_language_falls_back_to_default(self):
        assert render('assignedToInviterGroup', lang='ja-JP') == '分配到邀请人的群组'

    def test_unknown_code_renders_code(self):
        assert render('no.such.code', {}, 'en-US') == 'no.such.code'

    def test_missing_param_keeps_placeholder(self):
        assert render('auditSuccess', {"success": 2}, 'en-US') == \
            'Successfully approved 2 accounts, {failed} accounts audit failed'

    def test_resolve_lang(self):
        assert resolve_lang('en-US,en;q=0.9') == 'en-US'
        assert resolve_lang('en') == 'en-US'
        assert resolve_lang('fr-FR') == 'zh-CN'
        assert resolve_lang(None) == 'zh-CN'
