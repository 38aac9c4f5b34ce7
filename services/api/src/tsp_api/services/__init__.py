"""服务层：账号流程协作方与协调器。"""
