from locust import HttpUser, task, between


class PulseUser(HttpUser):
    wait_time = between(1, 2)

    @task(3)
    def health(self):
        self.client.get("/health")

    @task(2)
    def api_time(self):
        self.client.get("/api/time")

    @task
    def static_file(self):
        self.client.get("/static/hello.txt")

    @task
    def index(self):
        self.client.get("/")
